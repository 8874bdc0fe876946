"""
PayPal Orders v2 integration over the REST API.

PayPalClient owns the HTTP session and the OAuth2 token; PayPalService builds
orders, captures them and turns webhook deliveries into canonical events.
"""
import threading
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import requests
import structlog
from requests.auth import HTTPBasicAuth

from app.domain import CanonicalPaymentEvent, Outcome, PaymentProvider
from app.errors import ProviderRejected, ProviderUnavailable, ProviderVerificationFailed

logger = structlog.get_logger(__name__)

PROVIDER = PaymentProvider.PAYPAL.value

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
LIVE_URL = "https://api-m.paypal.com"

COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}

# Currencies without minor units would need a different exponent; the shop
# only sells in usd/eur/gbp.
_MINOR_UNIT = Decimal("0.01")

_CAPTURE_STATUS_OUTCOMES = {
    "COMPLETED": Outcome.SUCCEEDED,
    "PENDING": Outcome.PROCESSING,
    "DECLINED": Outcome.FAILED,
    "FAILED": Outcome.FAILED,
}

# 422 issues that mean the buyer's funding was refused. Anything else is a
# request or credential problem and leaves the order as it is.
_DECLINE_ISSUES = frozenset({
    "INSTRUMENT_DECLINED",
    "TRANSACTION_REFUSED",
    "PAYER_CANNOT_PAY",
    "PAYEE_BLOCKED_TRANSACTION",
    "TRANSACTION_BLOCKED_BY_PAYEE",
    "COMPLIANCE_VIOLATION",
    "MAX_NUMBER_OF_PAYMENT_ATTEMPTS_EXCEEDED",
})

_WEBHOOK_OUTCOMES = {
    "PAYMENT.CAPTURE.COMPLETED": Outcome.SUCCEEDED,
    "PAYMENT.CAPTURE.PENDING": Outcome.PROCESSING,
    "PAYMENT.CAPTURE.DENIED": Outcome.FAILED,
    "PAYMENT.CAPTURE.DECLINED": Outcome.FAILED,
    "CHECKOUT.ORDER.APPROVED": Outcome.PROCESSING,
    "CUSTOMER.DISPUTE.CREATED": Outcome.DISPUTED,
}

_VERIFICATION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def format_amount(amount: int) -> str:
    """Minor units to PayPal's decimal string: 799 -> "7.99"."""
    return str((Decimal(amount) * _MINOR_UNIT).quantize(_MINOR_UNIT))


class PayPalClient:
    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        mode: str = "sandbox",
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = LIVE_URL if mode == "live" else SANDBOX_URL
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.error("paypal_unavailable", method=method, url=url, error=str(exc))
            raise ProviderUnavailable(PROVIDER, "PayPal did not respond in time") from exc

    def access_token(self, force_refresh: bool = False) -> str:
        if not self.configured:
            raise ProviderUnavailable(PROVIDER, "PayPal is not configured")
        with self._token_lock:
            if not force_refresh and self._token and time.monotonic() < self._token_expires_at:
                return self._token

            resp = self._send(
                "POST",
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                auth=HTTPBasicAuth(self.client_id, self.client_secret),
            )
            if resp.status_code != 200:
                logger.error("paypal_token_failed", status_code=resp.status_code)
                raise ProviderUnavailable(PROVIDER, "Could not obtain a PayPal access token")

            body = resp.json()
            self._token = body["access_token"]
            # Refresh a minute early.
            self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
            return self._token

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        merged = dict(COMMON_HEADERS, **(headers or {}))

        merged["Authorization"] = f"Bearer {self.access_token()}"
        resp = self._send(method, url, json=json, headers=merged)
        if resp.status_code == 401:
            merged["Authorization"] = f"Bearer {self.access_token(force_refresh=True)}"
            resp = self._send(method, url, json=json, headers=merged)

        if resp.status_code == 429 or resp.status_code >= 500:
            logger.error("paypal_unavailable", path=path, status_code=resp.status_code)
            raise ProviderUnavailable(PROVIDER, f"PayPal returned {resp.status_code}")
        return resp


def _issue(resp: requests.Response) -> Optional[str]:
    try:
        details = resp.json().get("details") or []
    except ValueError:
        return None
    return details[0].get("issue") if details else None


def _first_unit(resource: Mapping[str, Any]) -> Mapping[str, Any]:
    units = resource.get("purchase_units") or [{}]
    return units[0]


def normalize_order_result(order: Dict[str, Any], event_type: str) -> Optional[CanonicalPaymentEvent]:
    """Build a canonical event from an Orders v2 resource returned by capture/get."""
    unit = _first_unit(order)
    captures = (unit.get("payments") or {}).get("captures") or []
    capture = captures[0] if captures else None
    correlation_id = unit.get("custom_id") or unit.get("reference_id")

    if capture is not None:
        outcome = _CAPTURE_STATUS_OUTCOMES.get(capture.get("status"))
        capture_id = capture.get("id")
    elif order.get("status") == "APPROVED":
        outcome, capture_id = Outcome.PROCESSING, None
    elif order.get("status") == "VOIDED":
        outcome, capture_id = Outcome.CANCELED, None
    else:
        outcome, capture_id = None, None

    if outcome is None:
        return None
    return CanonicalPaymentEvent(
        provider=PaymentProvider.PAYPAL,
        outcome=outcome,
        event_type=event_type,
        provider_ref=order["id"],
        correlation_id=correlation_id,
        capture_id=capture_id,
        raw=order,
    )


def normalize_webhook_event(event: Dict[str, Any]) -> Optional[CanonicalPaymentEvent]:
    """Translate a verified PayPal webhook; None for event types we don't model."""
    event_type = event.get("event_type", "")
    outcome = _WEBHOOK_OUTCOMES.get(event_type)
    if outcome is None:
        return None

    resource = event.get("resource") or {}
    capture_id = None
    ref_kind = "transaction"

    if event_type.startswith("PAYMENT.CAPTURE."):
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        provider_ref = related.get("order_id")
        correlation_id = resource.get("custom_id")
        capture_id = resource.get("id")
    elif event_type == "CHECKOUT.ORDER.APPROVED":
        provider_ref = resource.get("id")
        unit = _first_unit(resource)
        correlation_id = unit.get("custom_id") or unit.get("reference_id")
    else:
        transactions = resource.get("disputed_transactions") or [{}]
        provider_ref = transactions[0].get("seller_transaction_id")
        ref_kind = "capture"
        correlation_id = None

    return CanonicalPaymentEvent(
        provider=PaymentProvider.PAYPAL,
        outcome=outcome,
        event_type=event_type,
        provider_ref=provider_ref,
        ref_kind=ref_kind,
        correlation_id=correlation_id,
        provider_event_id=event.get("id"),
        capture_id=capture_id,
        raw=event,
    )


class PayPalService:
    def __init__(self, client: PayPalClient, webhook_id: Optional[str], frontend_url: str):
        self.client = client
        self.webhook_id = webhook_id
        self.frontend_url = frontend_url

    @property
    def enabled(self) -> bool:
        return self.client.configured

    def create_order(
        self, *, order_id: str, amount: int, currency: str, description: str
    ) -> Dict[str, Any]:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order_id,
                    "custom_id": order_id,
                    "description": description,
                    "amount": {
                        "currency_code": currency.upper(),
                        "value": format_amount(amount),
                    },
                }
            ],
            "application_context": {
                "brand_name": "CrystalEnergy.com",
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
                "return_url": f"{self.frontend_url}/payment-success",
                "cancel_url": f"{self.frontend_url}/payment-cancel",
            },
        }
        resp = self.client.request(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={"Prefer": "return=representation", "PayPal-Request-Id": f"create-{order_id}"},
        )
        if resp.status_code not in (200, 201):
            logger.warning("paypal_create_rejected", order_id=order_id, status_code=resp.status_code)
            raise ProviderRejected(PROVIDER, f"PayPal rejected the order ({_issue(resp) or resp.status_code})")

        result = resp.json()
        approval_url = next(
            (link["href"] for link in result.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return {"id": result["id"], "approval_url": approval_url, "raw": result}

    def get_order(self, paypal_order_id: str) -> Dict[str, Any]:
        resp = self.client.request("GET", f"/v2/checkout/orders/{paypal_order_id}")
        if resp.status_code != 200:
            raise ProviderRejected(PROVIDER, f"PayPal order lookup failed ({resp.status_code})")
        return resp.json()

    def capture_order(self, paypal_order_id: str) -> CanonicalPaymentEvent:
        resp = self.client.request(
            "POST",
            f"/v2/checkout/orders/{paypal_order_id}/capture",
            json={},
            headers={
                "Prefer": "return=representation",
                "PayPal-Request-Id": f"capture-{paypal_order_id}",
            },
        )

        if resp.status_code in (200, 201):
            event = normalize_order_result(resp.json(), "paypal.order.captured")
            if event is None:
                raise ProviderRejected(PROVIDER, "PayPal capture returned no usable status")
            return event

        issue = _issue(resp)
        if issue == "ORDER_ALREADY_CAPTURED":
            event = normalize_order_result(self.get_order(paypal_order_id), "paypal.order.already_captured")
            if event is not None:
                return event
        if issue == "ORDER_NOT_APPROVED":
            raise ProviderRejected(PROVIDER, "The buyer has not approved this PayPal order yet")
        if resp.status_code in (401, 403):
            logger.error(
                "paypal_capture_unauthorized", paypal_order_id=paypal_order_id, status_code=resp.status_code
            )
            raise ProviderUnavailable(PROVIDER, f"PayPal refused our credentials ({resp.status_code})")
        if resp.status_code != 422 or issue not in _DECLINE_ISSUES:
            logger.warning(
                "paypal_capture_rejected",
                paypal_order_id=paypal_order_id,
                status_code=resp.status_code,
                issue=issue,
            )
            raise ProviderRejected(
                PROVIDER, f"PayPal capture failed with {resp.status_code} ({issue or 'no issue code'})"
            )

        logger.warning("paypal_capture_declined", paypal_order_id=paypal_order_id, issue=issue)
        return CanonicalPaymentEvent(
            provider=PaymentProvider.PAYPAL,
            outcome=Outcome.FAILED,
            event_type="paypal.order.capture_failed",
            provider_ref=paypal_order_id,
            raw={"status_code": resp.status_code, "issue": issue},
        )

    def verify_webhook(self, headers: Mapping[str, str], event: Dict[str, Any]) -> None:
        """Ask PayPal to confirm the transmission signature; raise on anything but SUCCESS."""
        if not self.webhook_id:
            raise ProviderVerificationFailed(PROVIDER, "PayPal webhook id is not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        body = {}
        for field, header in _VERIFICATION_HEADERS.items():
            value = lowered.get(header)
            if not value:
                raise ProviderVerificationFailed(PROVIDER, f"Missing {header} header")
            body[field] = value
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = event

        resp = self.client.request("POST", "/v1/notifications/verify-webhook-signature", json=body)
        status = resp.json().get("verification_status") if resp.status_code == 200 else None
        if status != "SUCCESS":
            raise ProviderVerificationFailed(PROVIDER, "Invalid signature")
        logger.info("webhook_signature_verified", provider=PROVIDER, event_type=event.get("event_type"))
