"""
Payment creation and synchronous capture/confirm flows.

The customer row is committed before the provider is called, so no write
lock is held across the network call. The order row is written only after
the provider answers; a provider failure leaves no order behind.
"""
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from app import store
from app.domain import LogStatus, OrderType, PaymentProvider
from app.errors import NotFoundError, ValidationError
from app.models import Order
from app.reconciliation import ReconciliationResult
from app.schemas import PaymentRequest
from app.stripe_service import normalize_payment_intent, to_plain

logger = structlog.get_logger(__name__)


def _check_method(request: PaymentRequest, provider: PaymentProvider) -> None:
    if request.payment_method is not None and request.payment_method is not provider:
        raise ValidationError(f"Payment method must be {provider.value} for this endpoint")


def _description(request: PaymentRequest) -> str:
    if request.order_type is OrderType.CONSULTATION:
        return f"Feng Shui Consultation - {request.customer_name}"
    return f"Crystal Purchase - {request.customer_name}"


def _commit_customer(db: Session, request: PaymentRequest) -> Tuple[str, str]:
    customer = store.get_or_create_customer(db, request.customer_email, request.customer_name)
    store.commit(db)
    return customer.id, customer.email


def create_stripe_payment(db: Session, services, request: PaymentRequest) -> Dict[str, Any]:
    _check_method(request, PaymentProvider.STRIPE)

    customer_id, customer_email = _commit_customer(db, request)
    order_id = store.new_id()

    intent = services.stripe.create_payment(
        order_id=order_id,
        amount=request.amount,
        currency=request.currency,
        customer_id=customer_id,
        customer_email=customer_email,
        order_type=request.order_type.value,
    )

    store.create_order(
        db,
        order_id=order_id,
        customer_id=customer_id,
        order_type=request.order_type.value,
        amount=request.amount,
        currency=request.currency,
        payment_method=PaymentProvider.STRIPE.value,
        stripe_payment_intent_id=intent.id,
        metadata=request.metadata.model_dump(mode="json"),
    )
    store.append_payment_log(
        db,
        provider=PaymentProvider.STRIPE.value,
        event_type="payment_intent.created",
        status=LogStatus.CREATED.value,
        order_id=order_id,
        provider_event_id=intent.id,
        raw_payload={"payment_intent_id": intent.id, "amount": request.amount, "currency": request.currency},
    )
    store.commit(db)
    logger.info("order_created", order_id=order_id, provider="stripe", amount=request.amount)

    return {
        "success": True,
        "clientSecret": intent.client_secret,
        "paymentIntentId": intent.id,
        "orderId": order_id,
        "customerId": customer_id,
        "amount": request.amount,
        "currency": request.currency,
    }


def create_paypal_payment(db: Session, services, request: PaymentRequest) -> Dict[str, Any]:
    _check_method(request, PaymentProvider.PAYPAL)

    customer_id, _ = _commit_customer(db, request)
    order_id = store.new_id()

    created = services.paypal.create_order(
        order_id=order_id,
        amount=request.amount,
        currency=request.currency,
        description=_description(request),
    )

    store.create_order(
        db,
        order_id=order_id,
        customer_id=customer_id,
        order_type=request.order_type.value,
        amount=request.amount,
        currency=request.currency,
        payment_method=PaymentProvider.PAYPAL.value,
        paypal_order_id=created["id"],
        metadata=request.metadata.model_dump(mode="json"),
    )
    store.append_payment_log(
        db,
        provider=PaymentProvider.PAYPAL.value,
        event_type="paypal.order.created",
        status=LogStatus.CREATED.value,
        order_id=order_id,
        raw_payload=created["raw"],
    )
    store.commit(db)
    logger.info("order_created", order_id=order_id, provider="paypal", amount=request.amount)

    return {
        "success": True,
        "paypalOrderId": created["id"],
        "approvalUrl": created["approval_url"],
        "orderId": order_id,
        "customerId": customer_id,
        "amount": request.amount,
        "currency": request.currency.upper(),
    }


def capture_paypal_payment(db: Session, services, paypal_order_id: str) -> Tuple[Order, ReconciliationResult]:
    order = store.find_order_by_provider_ref(db, PaymentProvider.PAYPAL.value, paypal_order_id)
    if order is None:
        raise NotFoundError("Order not found")

    event = services.paypal.capture_order(paypal_order_id)
    result = services.engine.apply(db, event)
    return store.get_order(db, order.id), result


def confirm_stripe_payment(
    db: Session, services, payment_intent_id: str
) -> Tuple[Order, Optional[ReconciliationResult], str]:
    order = store.find_order_by_provider_ref(db, PaymentProvider.STRIPE.value, payment_intent_id)
    if order is None:
        raise NotFoundError("Order not found")

    intent = services.stripe.retrieve_payment(payment_intent_id)
    intent_status = intent["status"]
    event = normalize_payment_intent(to_plain(intent))
    if event is None:
        logger.info("stripe_confirm_waiting", order_id=order.id, intent_status=intent_status)
        return order, None, intent_status

    result = services.engine.apply(db, event)
    return store.get_order(db, order.id), result, intent_status
