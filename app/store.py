"""
Persistence store.

Functions take an open Session and never commit on their own; callers group
writes and finish them with commit(), so a status change and its audit row land
together or not at all.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.domain import ConsultationStatus, EmailStatus, LogStatus, OrderStatus
from app.errors import PersistenceError
from app.models import Consultation, Customer, EmailLog, Order, PaymentLog

logger = structlog.get_logger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def commit(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("store_commit_failed", error=str(exc))
        raise PersistenceError("Database operation failed") from exc


# Customers

def get_or_create_customer(db: Session, email: str, name: str) -> Customer:
    email = email.strip().lower()
    customer = db.execute(select(Customer).filter_by(email=email)).scalar_one_or_none()
    if customer:
        return customer

    customer = Customer(id=new_id(), email=email, name=name)
    db.add(customer)
    try:
        db.flush()
    except IntegrityError:
        # Concurrent first payment attempt with the same email.
        db.rollback()
        customer = db.execute(select(Customer).filter_by(email=email)).scalar_one_or_none()
        if customer is None:
            raise PersistenceError("Could not create customer")
    return customer


def get_customer(db: Session, customer_id: str) -> Optional[Customer]:
    return db.get(Customer, customer_id)


# Orders

def create_order(
    db: Session,
    *,
    order_id: str,
    customer_id: str,
    order_type: str,
    amount: int,
    currency: str,
    payment_method: str,
    stripe_payment_intent_id: Optional[str] = None,
    paypal_order_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Order:
    if (stripe_payment_intent_id is None) == (paypal_order_id is None):
        raise ValueError("Exactly one provider reference must be set on an order")
    if payment_method == "stripe" and stripe_payment_intent_id is None:
        raise ValueError("Stripe orders need a PaymentIntent id")
    if payment_method == "paypal" and paypal_order_id is None:
        raise ValueError("PayPal orders need a PayPal order id")
    if not isinstance(amount, int) or amount < 0:
        raise ValueError("Order amount must be a non-negative integer")

    order = Order(
        id=order_id,
        customer_id=customer_id,
        type=order_type,
        amount=amount,
        currency=currency,
        status=OrderStatus.PENDING.value,
        payment_method=payment_method,
        stripe_payment_intent_id=stripe_payment_intent_id,
        paypal_order_id=paypal_order_id,
        order_metadata=metadata,
    )
    db.add(order)
    return order


def get_order(db: Session, order_id: str) -> Optional[Order]:
    return db.get(Order, order_id)


_PROVIDER_REF_COLUMNS = {
    "stripe": Order.stripe_payment_intent_id,
    "paypal": Order.paypal_order_id,
    "paypal_capture": Order.paypal_capture_id,
}


def find_order_by_provider_ref(db: Session, provider: str, ref: str) -> Optional[Order]:
    column = _PROVIDER_REF_COLUMNS.get(provider)
    if column is None:
        raise ValueError(f"Unknown provider reference kind: {provider}")
    return db.execute(select(Order).where(column == ref)).scalar_one_or_none()


def update_order_status(
    db: Session, order_id: str, status: str, *, expected: Optional[str] = None
) -> bool:
    """
    Set an order's status. With expected, the write only happens when the
    stored status still equals it; returns whether a row changed.
    """
    stmt = update(Order).where(Order.id == order_id)
    if expected is not None:
        stmt = stmt.where(Order.status == expected)
    result = db.execute(
        stmt.values(status=status, updated_at=_now()).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def update_order_provider_capture(db: Session, order_id: str, capture_id: str) -> None:
    db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(paypal_capture_id=capture_id, updated_at=_now())
        .execution_options(synchronize_session=False)
    )


# Consultations

def create_consultation(
    db: Session,
    *,
    order_id: str,
    customer_id: str,
    consultation_type: str,
    birth_date: str,
    birth_time: Optional[str],
    birth_place: str,
    questions: str,
) -> Consultation:
    consultation = Consultation(
        id=new_id(),
        order_id=order_id,
        customer_id=customer_id,
        consultation_type=consultation_type,
        birth_date=birth_date,
        birth_time=birth_time,
        birth_place=birth_place,
        questions=questions,
        status=ConsultationStatus.PENDING.value,
    )
    db.add(consultation)
    return consultation


def get_consultation_by_id(db: Session, consultation_id: str) -> Optional[Consultation]:
    return db.get(Consultation, consultation_id)


def get_consultation_by_order(db: Session, order_id: str) -> Optional[Consultation]:
    return db.execute(select(Consultation).filter_by(order_id=order_id)).scalar_one_or_none()


def claim_consultation(db: Session, consultation_id: str) -> bool:
    """Move a consultation from pending to processing; False if someone else has it."""
    result = db.execute(
        update(Consultation)
        .where(
            Consultation.id == consultation_id,
            Consultation.status == ConsultationStatus.PENDING.value,
        )
        .values(status=ConsultationStatus.PROCESSING.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def update_consultation_result(db: Session, consultation_id: str, text: str) -> None:
    db.execute(
        update(Consultation)
        .where(Consultation.id == consultation_id)
        .values(
            ai_result=text,
            status=ConsultationStatus.COMPLETED.value,
            generated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )


def mark_consultation_failed(db: Session, consultation_id: str) -> None:
    db.execute(
        update(Consultation)
        .where(Consultation.id == consultation_id)
        .values(status=ConsultationStatus.FAILED.value)
        .execution_options(synchronize_session=False)
    )


def mark_consultation_emailed(db: Session, consultation_id: str) -> None:
    db.execute(
        update(Consultation)
        .where(Consultation.id == consultation_id)
        .values(email_sent_at=_now())
        .execution_options(synchronize_session=False)
    )


# Logs (write-once)

def append_payment_log(
    db: Session,
    *,
    provider: str,
    event_type: str,
    status: str,
    order_id: Optional[str] = None,
    provider_event_id: Optional[str] = None,
    raw_payload: Optional[Any] = None,
) -> PaymentLog:
    entry = PaymentLog(
        id=new_id(),
        order_id=order_id,
        provider=provider,
        provider_event_id=provider_event_id,
        event_type=event_type,
        status=status,
        raw_payload=raw_payload,
    )
    db.add(entry)
    return entry


def has_applied_event(db: Session, provider: str, provider_event_id: str) -> bool:
    row = db.execute(
        select(PaymentLog.id)
        .where(
            PaymentLog.provider == provider,
            PaymentLog.provider_event_id == provider_event_id,
            PaymentLog.status == LogStatus.APPLIED.value,
        )
        .limit(1)
    ).first()
    return row is not None


def list_payment_logs(
    db: Session, *, status: Optional[str] = None, order_id: Optional[str] = None, limit: int = 100
) -> List[PaymentLog]:
    stmt = select(PaymentLog)
    if status:
        stmt = stmt.where(PaymentLog.status == status)
    if order_id:
        stmt = stmt.where(PaymentLog.order_id == order_id)
    stmt = stmt.order_by(PaymentLog.created_at.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def append_email_log(
    db: Session,
    *,
    recipient: str,
    subject: str,
    status: str,
    consultation_id: Optional[str] = None,
    error: Optional[str] = None,
) -> EmailLog:
    entry = EmailLog(
        id=new_id(),
        consultation_id=consultation_id,
        recipient=recipient,
        subject=subject,
        status=status,
        error=error,
        sent_at=_now() if status == EmailStatus.SENT.value else None,
    )
    db.add(entry)
    return entry
