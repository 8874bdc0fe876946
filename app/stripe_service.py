from typing import Any, Dict, Optional

import stripe
import structlog

from app.domain import CanonicalPaymentEvent, Outcome, PaymentProvider
from app.errors import ProviderRejected, ProviderUnavailable, ProviderVerificationFailed

logger = structlog.get_logger(__name__)

PROVIDER = PaymentProvider.STRIPE.value

_WEBHOOK_OUTCOMES = {
    "payment_intent.succeeded": Outcome.SUCCEEDED,
    "payment_intent.processing": Outcome.PROCESSING,
    "payment_intent.payment_failed": Outcome.FAILED,
    "payment_intent.canceled": Outcome.CANCELED,
    "charge.dispute.created": Outcome.DISPUTED,
}

# PaymentIntent.status values that say something definite about the payment;
# requires_payment_method/requires_action etc. mean the buyer is still busy.
_INTENT_STATUS_OUTCOMES = {
    "succeeded": Outcome.SUCCEEDED,
    "processing": Outcome.PROCESSING,
    "requires_capture": Outcome.PROCESSING,
    "canceled": Outcome.CANCELED,
}


def to_plain(value: Any) -> Any:
    """StripeObjects are dict subclasses; strip them down for JSON columns."""
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


def normalize_webhook_event(event: Dict[str, Any]) -> Optional[CanonicalPaymentEvent]:
    """Translate a verified Stripe event; None for event types we don't model."""
    event_type = event["type"]
    outcome = _WEBHOOK_OUTCOMES.get(event_type)
    if outcome is None:
        return None

    obj = event["data"]["object"]
    if outcome is Outcome.DISPUTED:
        provider_ref = obj.get("payment_intent")
        correlation_id = None
    else:
        provider_ref = obj["id"]
        correlation_id = (obj.get("metadata") or {}).get("order_id")

    return CanonicalPaymentEvent(
        provider=PaymentProvider.STRIPE,
        outcome=outcome,
        event_type=event_type,
        provider_ref=provider_ref,
        correlation_id=correlation_id,
        provider_event_id=event.get("id"),
        raw=to_plain(obj),
    )


def normalize_payment_intent(intent: Dict[str, Any]) -> Optional[CanonicalPaymentEvent]:
    """Translate a polled PaymentIntent; None while it still waits on the buyer."""
    status = intent["status"]
    outcome = _INTENT_STATUS_OUTCOMES.get(status)
    if outcome is None:
        return None
    return CanonicalPaymentEvent(
        provider=PaymentProvider.STRIPE,
        outcome=outcome,
        event_type=f"payment_intent.{status}",
        provider_ref=intent["id"],
        correlation_id=(intent.get("metadata") or {}).get("order_id"),
        raw=to_plain(intent),
    )


class StripeService:
    """Holds Stripe credentials; one instance is built at startup and injected."""

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str]):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _call(self, operation: str, fn, *args, **kwargs):
        if not self.api_key:
            raise ProviderUnavailable(PROVIDER, "Stripe is not configured")
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.error("stripe_unavailable", operation=operation, error=str(exc))
            raise ProviderUnavailable(PROVIDER, f"Stripe unavailable: {exc.user_message or exc}") from exc
        except stripe.StripeError as exc:
            if exc.http_status and exc.http_status >= 500:
                logger.error("stripe_unavailable", operation=operation, error=str(exc))
                raise ProviderUnavailable(PROVIDER, "Stripe returned a server error") from exc
            logger.warning("stripe_rejected", operation=operation, error=str(exc))
            raise ProviderRejected(PROVIDER, exc.user_message or str(exc)) from exc

    def create_payment(
        self,
        *,
        order_id: str,
        amount: int,
        currency: str,
        customer_id: str,
        customer_email: str,
        order_type: str,
    ):
        return self._call(
            "create_payment",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            receipt_email=customer_email,
            metadata={
                "order_id": order_id,
                "order_type": order_type,
                "customer_id": customer_id,
            },
            idempotency_key=order_id,
        )

    def retrieve_payment(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._call("retrieve_payment", stripe.PaymentIntent.retrieve, payment_intent_id)

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event."""
        if not self.webhook_secret:
            raise ProviderVerificationFailed(PROVIDER, "Stripe webhook secret is not configured")
        if not signature:
            raise ProviderVerificationFailed(PROVIDER, "Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as exc:
            raise ProviderVerificationFailed(PROVIDER, "Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise ProviderVerificationFailed(PROVIDER, "Invalid signature") from exc

        logger.info("webhook_signature_verified", provider=PROVIDER, event_type=event["type"])
        return event
