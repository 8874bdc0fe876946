"""
Order status transition function.

    current      succeeded    processing   failed/canceled   disputed
    pending      completed    processing   failed            ignored
    processing   completed    no-op        failed            ignored
    completed    no-op        ignored      ignored           manual review
    failed       ignored      ignored      no-op             ignored
    refunded     ignored      ignored      ignored           ignored

A completed order is never moved backward; the first terminal outcome wins.
"""
from dataclasses import dataclass
from enum import Enum

from app.domain import OrderStatus, Outcome


class Verdict(str, Enum):
    APPLIED = "applied"        # status changes
    NOOP = "noop"              # outcome agrees with current status
    IGNORED = "ignored"        # outcome is stale or would regress a terminal order
    REVIEW = "manual_review"   # keep status, flag for a human


@dataclass(frozen=True)
class Decision:
    current: OrderStatus
    target: OrderStatus
    verdict: Verdict

    @property
    def changed(self) -> bool:
        return self.verdict is Verdict.APPLIED

    @property
    def completes_order(self) -> bool:
        return self.changed and self.target is OrderStatus.COMPLETED


_OUTCOME_TARGET = {
    Outcome.SUCCEEDED: OrderStatus.COMPLETED,
    Outcome.PROCESSING: OrderStatus.PROCESSING,
    Outcome.FAILED: OrderStatus.FAILED,
    Outcome.CANCELED: OrderStatus.FAILED,
}


def decide(current: OrderStatus, outcome: Outcome) -> Decision:
    current = OrderStatus(current)
    outcome = Outcome(outcome)

    if outcome is Outcome.DISPUTED:
        if current is OrderStatus.COMPLETED:
            return Decision(current, current, Verdict.REVIEW)
        return Decision(current, current, Verdict.IGNORED)

    target = _OUTCOME_TARGET[outcome]

    if target is current:
        return Decision(current, current, Verdict.NOOP)

    if current.is_terminal:
        return Decision(current, current, Verdict.IGNORED)

    # pending/processing: any outcome moves forward, except nothing
    # returns an order to pending.
    return Decision(current, target, Verdict.APPLIED)
