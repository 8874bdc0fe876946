"""
Consultation fulfilment: what happens after a consultation order is paid.

Both entry points race for the same consultation row; whoever wins the
pending -> processing claim generates the text and sends the one email.
"""
from typing import Callable, Optional

import structlog
from sqlalchemy.orm import Session

from app import store
from app.consultation_service import ConsultationInput
from app.domain import ConsultationStatus, ConsultationType, OrderStatus, OrderType
from app.errors import NotFoundError, ValidationError
from app.models import Consultation, Order
from app.schemas import ConsultationRequest

logger = structlog.get_logger(__name__)


def _generate_and_notify(db: Session, services, consultation: Consultation, order: Order) -> Consultation:
    consultation_id = consultation.id
    data = ConsultationInput(
        consultation_type=ConsultationType(consultation.consultation_type),
        birth_date=consultation.birth_date,
        birth_time=consultation.birth_time,
        birth_place=consultation.birth_place,
        questions=consultation.questions,
    )

    try:
        result = services.generator.generate(data)
    except Exception:
        logger.exception("consultation_generation_failed", consultation_id=consultation_id, order_id=order.id)
        store.mark_consultation_failed(db, consultation_id)
        store.commit(db)
        raise

    store.update_consultation_result(db, consultation_id, result.text)
    store.commit(db)
    logger.info(
        "consultation_completed",
        consultation_id=consultation_id,
        order_id=order.id,
        source=result.source,
    )

    consultation = store.get_consultation_by_id(db, consultation_id)
    customer = store.get_customer(db, order.customer_id)
    services.email.send_consultation_ready(db, consultation, customer.email, customer.name)
    return consultation


def fulfil_order(db: Session, services, order_id: str) -> Optional[Consultation]:
    """
    Run once an order has become completed. Without a submitted consultation
    there is nothing to do yet; submission will generate it later.
    """
    order = store.get_order(db, order_id)
    if order is None or order.type != OrderType.CONSULTATION.value:
        return None
    if order.status != OrderStatus.COMPLETED.value:
        logger.warning("fulfilment_skipped_unpaid_order", order_id=order_id, status=order.status)
        return None

    consultation = store.get_consultation_by_order(db, order_id)
    if consultation is None:
        logger.info("fulfilment_waiting_for_submission", order_id=order_id)
        return None

    if not store.claim_consultation(db, consultation.id):
        db.rollback()
        logger.info("fulfilment_already_claimed", order_id=order_id, consultation_id=consultation.id)
        return store.get_consultation_by_id(db, consultation.id)
    store.commit(db)

    return _generate_and_notify(db, services, consultation, order)


def fulfil_in_background(session_factory: Callable[[], Session], services, order_id: str) -> None:
    with session_factory() as db:
        fulfil_order(db, services, order_id)


def submit_consultation(db: Session, services, request: ConsultationRequest) -> Consultation:
    order = store.get_order(db, request.order_id)
    if order is None:
        raise NotFoundError(f"Order {request.order_id} not found")
    if order.type != OrderType.CONSULTATION.value:
        raise ValidationError("Order is not a consultation order")
    if order.customer_id != request.customer_id:
        raise ValidationError("Customer does not match the order")
    if order.status in (OrderStatus.FAILED.value, OrderStatus.REFUNDED.value):
        raise ValidationError(f"Order is {order.status}; no consultation can be generated")
    paid_type = (order.order_metadata or {}).get("consultation_type")
    if paid_type != request.consultation_type.value:
        raise ValidationError(
            f"Order was paid for a {paid_type} consultation, not {request.consultation_type.value}"
        )

    consultation = store.get_consultation_by_order(db, order.id)
    if consultation is None:
        consultation = store.create_consultation(
            db,
            order_id=order.id,
            customer_id=order.customer_id,
            consultation_type=request.consultation_type.value,
            birth_date=request.birth_date.isoformat(),
            birth_time=request.birth_time,
            birth_place=request.birth_place,
            questions=request.questions,
        )
        store.commit(db)
        logger.info("consultation_submitted", consultation_id=consultation.id, order_id=order.id)

    if order.status != OrderStatus.COMPLETED.value:
        return consultation

    if consultation.status != ConsultationStatus.PENDING.value:
        return consultation

    if not store.claim_consultation(db, consultation.id):
        db.rollback()
        return store.get_consultation_by_id(db, consultation.id)
    store.commit(db)

    return _generate_and_notify(db, services, consultation, order)
