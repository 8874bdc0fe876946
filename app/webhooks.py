"""
Inbound processor webhooks.

Signature checks happen before anything touches the database; a delivery that
fails them is answered 400 and only logged. Verified deliveries are normalized
by the provider adapter and handed to the reconciliation engine. Consultation
fulfilment runs after the acknowledgement has been sent.
"""
import json
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from starlette.concurrency import run_in_threadpool

from app import paypal_service, stripe_service
from app.database import SessionLocal
from app.dependencies import Services, get_services
from app.domain import CanonicalPaymentEvent, PaymentProvider
from app.errors import ProviderVerificationFailed
from app.fulfilment import fulfil_in_background
from app.reconciliation import ReconciliationResult

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/webhooks")


def _excerpt(payload: bytes, limit: int = 500) -> str:
    return payload[:limit].decode("utf-8", errors="replace")


def _reconcile(
    services: Services,
    provider: PaymentProvider,
    event: Dict[str, Any],
    event_type: str,
    canonical: Optional[CanonicalPaymentEvent],
) -> Optional[ReconciliationResult]:
    with SessionLocal() as db:
        if canonical is None:
            services.engine.record_unhandled(
                db,
                provider=provider.value,
                event_type=event_type,
                provider_event_id=event.get("id"),
                raw=event,
            )
            return None
        return services.engine.apply(db, canonical)


def _process_stripe(services: Services, payload: bytes, signature: Optional[str]) -> Optional[ReconciliationResult]:
    event = stripe_service.to_plain(services.stripe.parse_webhook(payload, signature))
    canonical = stripe_service.normalize_webhook_event(event)
    return _reconcile(services, PaymentProvider.STRIPE, event, event["type"], canonical)


def _process_paypal(services: Services, payload: bytes, headers: Dict[str, str]) -> Optional[ReconciliationResult]:
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ProviderVerificationFailed(PaymentProvider.PAYPAL.value, "Invalid payload") from exc
    if not isinstance(event, dict):
        raise ProviderVerificationFailed(PaymentProvider.PAYPAL.value, "Invalid payload")

    services.paypal.verify_webhook(headers, event)
    canonical = paypal_service.normalize_webhook_event(event)
    return _reconcile(services, PaymentProvider.PAYPAL, event, event.get("event_type", ""), canonical)


def _acknowledge(
    background_tasks: BackgroundTasks,
    services: Services,
    result: Optional[ReconciliationResult],
) -> Dict[str, Any]:
    if result is not None and result.fan_out:
        background_tasks.add_task(fulfil_in_background, SessionLocal, services, result.order_id)
    return {"received": True}


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        result = await run_in_threadpool(_process_stripe, services, payload, signature)
    except ProviderVerificationFailed as exc:
        logger.warning("webhook_rejected", provider="stripe", reason=exc.message, payload=_excerpt(payload))
        raise

    return _acknowledge(background_tasks, services, result)


@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    payload = await request.body()
    headers = dict(request.headers)

    try:
        result = await run_in_threadpool(_process_paypal, services, payload, headers)
    except ProviderVerificationFailed as exc:
        logger.warning("webhook_rejected", provider="paypal", reason=exc.message, payload=_excerpt(payload))
        raise

    return _acknowledge(background_tasks, services, result)


@router.get("/health")
def webhook_health(services: Services = Depends(get_services)):
    return {
        "status": "OK",
        "stripe": services.stripe.enabled,
        "paypal": services.paypal.enabled,
    }
