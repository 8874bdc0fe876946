"""
Provider-agnostic vocabulary shared by the reconciliation engine and the
provider adapters.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.REFUNDED)


class OrderType(str, Enum):
    CONSULTATION = "consultation"
    PRODUCT = "product"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"
    CANCELED = "canceled"
    DISPUTED = "disputed"


class ConsultationType(str, Enum):
    BASIC = "basic"
    DETAILED = "detailed"
    COMPREHENSIVE = "comprehensive"


# Minor currency units; the same figure is charged in every supported currency.
CONSULTATION_PRICES = {
    ConsultationType.BASIC: 299,
    ConsultationType.DETAILED: 599,
    ConsultationType.COMPREHENSIVE: 799,
}


class ConsultationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EmailStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class LogStatus(str, Enum):
    """Status recorded on a payment log row."""

    CREATED = "created"
    APPLIED = "applied"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    MANUAL_REVIEW = "manual_review"


@dataclass(frozen=True)
class CanonicalPaymentEvent:
    """
    A payment event reduced to what the state machine needs.

    provider_ref is the provider's own transaction id (PaymentIntent id,
    PayPal order id, or PayPal capture id when ref_kind is "capture").
    correlation_id is our order id threaded through the provider call.
    """

    provider: PaymentProvider
    outcome: Outcome
    event_type: str
    provider_ref: Optional[str] = None
    ref_kind: str = "transaction"
    correlation_id: Optional[str] = None
    provider_event_id: Optional[str] = None
    capture_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
