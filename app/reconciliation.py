"""
Order reconciliation engine.

Applies canonical payment events to orders. Provider vocabulary stops at the
adapters; everything here speaks CanonicalPaymentEvent. The engine never sends
email or calls the LLM itself; it reports fan_out=True on the single edge where
an order becomes completed and lets the caller schedule that work.
"""
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from sqlalchemy.orm import Session

from app import store
from app.domain import CanonicalPaymentEvent, LogStatus, OrderStatus, OrderType
from app.errors import PersistenceError
from app.models import Order
from app.state_machine import Verdict, decide

logger = structlog.get_logger(__name__)

# Compare-and-set attempts before giving up on a hot order.
MAX_CAS_ATTEMPTS = 3


@dataclass(frozen=True)
class ReconciliationResult:
    order_id: Optional[str]
    previous_status: Optional[str]
    status: Optional[str]
    log_status: str
    changed: bool = False
    fan_out: bool = False
    order_type: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.log_status == LogStatus.DUPLICATE.value

    @property
    def matched(self) -> bool:
        return self.order_id is not None


_VERDICT_LOG_STATUS = {
    Verdict.APPLIED: LogStatus.APPLIED,
    Verdict.NOOP: LogStatus.IGNORED,
    Verdict.IGNORED: LogStatus.IGNORED,
    Verdict.REVIEW: LogStatus.MANUAL_REVIEW,
}


class ReconciliationEngine:

    def resolve_order(self, db: Session, event: CanonicalPaymentEvent) -> Optional[Order]:
        """Provider transaction id first, then our own correlation id."""
        order = None
        if event.provider_ref:
            kind = event.provider.value
            if event.ref_kind == "capture":
                kind = "paypal_capture"
            order = store.find_order_by_provider_ref(db, kind, event.provider_ref)
        if order is None and event.correlation_id:
            order = store.get_order(db, event.correlation_id)
            if order is not None and order.payment_method != event.provider.value:
                logger.warning(
                    "correlation_id_provider_mismatch",
                    order_id=order.id,
                    provider=event.provider.value,
                )
                order = None
        return order

    def apply(self, db: Session, event: CanonicalPaymentEvent) -> ReconciliationResult:
        log = logger.bind(
            provider=event.provider.value,
            event_type=event.event_type,
            provider_event_id=event.provider_event_id,
            outcome=event.outcome.value,
        )

        order = self.resolve_order(db, event)
        if order is None:
            self._log(db, event, LogStatus.UNMATCHED, order_id=None)
            store.commit(db)
            log.warning(
                "payment_event_unmatched",
                provider_ref=event.provider_ref,
                correlation_id=event.correlation_id,
            )
            return ReconciliationResult(
                order_id=None,
                previous_status=None,
                status=None,
                log_status=LogStatus.UNMATCHED.value,
            )

        order_id = order.id
        order_type = order.type
        log = log.bind(order_id=order_id)

        if event.provider_event_id and store.has_applied_event(
            db, event.provider.value, event.provider_event_id
        ):
            status = order.status
            self._log(db, event, LogStatus.DUPLICATE, order_id=order_id)
            store.commit(db)
            log.info("payment_event_duplicate", status=status)
            return ReconciliationResult(
                order_id=order_id,
                previous_status=status,
                status=status,
                log_status=LogStatus.DUPLICATE.value,
                order_type=order_type,
            )

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            current = OrderStatus(order.status)
            decision = decide(current, event.outcome)

            if decision.changed:
                swapped = store.update_order_status(
                    db, order_id, decision.target.value, expected=current.value
                )
                if not swapped:
                    # Another delivery moved the order first; re-read and decide again.
                    db.rollback()
                    log.info("order_transition_conflict", attempt=attempt, expected=current.value)
                    order = store.get_order(db, order_id)
                    if order is None:
                        break
                    continue

            if event.capture_id and order.paypal_capture_id != event.capture_id \
                    and decision.verdict is not Verdict.IGNORED:
                store.update_order_provider_capture(db, order_id, event.capture_id)

            log_status = _VERDICT_LOG_STATUS[decision.verdict]
            self._log(db, event, log_status, order_id=order_id)
            store.commit(db)

            fan_out = decision.completes_order and order_type == OrderType.CONSULTATION.value
            if decision.verdict is Verdict.REVIEW:
                log.warning("payment_event_flagged_for_review", status=current.value)
            elif decision.changed:
                log.info(
                    "order_transition_applied",
                    previous_status=current.value,
                    status=decision.target.value,
                    fan_out=fan_out,
                )
            else:
                log.info("payment_event_ignored", status=current.value, verdict=decision.verdict.value)

            return ReconciliationResult(
                order_id=order_id,
                previous_status=current.value,
                status=decision.target.value,
                log_status=log_status.value,
                changed=decision.changed,
                fan_out=fan_out,
                order_type=order_type,
            )

        log.error("order_transition_gave_up", attempts=MAX_CAS_ATTEMPTS)
        raise PersistenceError(f"Order {order_id} kept changing while applying {event.event_type}")

    def record_unhandled(
        self,
        db: Session,
        *,
        provider: str,
        event_type: str,
        provider_event_id: Optional[str],
        raw: Any,
    ) -> None:
        store.append_payment_log(
            db,
            provider=provider,
            event_type=event_type,
            status=LogStatus.IGNORED.value,
            provider_event_id=provider_event_id,
            raw_payload=raw,
        )
        store.commit(db)
        logger.info("payment_event_unhandled", provider=provider, event_type=event_type)

    @staticmethod
    def _log(db: Session, event: CanonicalPaymentEvent, status: LogStatus, order_id: Optional[str]) -> None:
        store.append_payment_log(
            db,
            provider=event.provider.value,
            event_type=event.event_type,
            status=status.value,
            order_id=order_id,
            provider_event_id=event.provider_event_id,
            raw_payload=event.raw,
        )
