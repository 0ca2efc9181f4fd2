"""
Domain: payment lifecycle state machine.

    Initiated -> AwaitingConfirmation -> Materialized | Abandoned | Expired

One transition function is shared by the webhook, fallback and recovery
paths. Terminal states accept re-entry into themselves so that replays are
idempotent.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .staged_order import StagedOrderRecord


class PaymentLifecycle(str, Enum):
    INITIATED = "initiated"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    MATERIALIZED = "materialized"
    ABANDONED = "abandoned"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[PaymentLifecycle] = frozenset(
    {PaymentLifecycle.MATERIALIZED, PaymentLifecycle.ABANDONED, PaymentLifecycle.EXPIRED}
)

_TRANSITIONS: Dict[PaymentLifecycle, FrozenSet[PaymentLifecycle]] = {
    PaymentLifecycle.INITIATED: frozenset(
        {PaymentLifecycle.AWAITING_CONFIRMATION, PaymentLifecycle.ABANDONED}
    ),
    PaymentLifecycle.AWAITING_CONFIRMATION: frozenset(
        {PaymentLifecycle.MATERIALIZED, PaymentLifecycle.ABANDONED, PaymentLifecycle.EXPIRED}
    ),
    PaymentLifecycle.MATERIALIZED: frozenset(),
    PaymentLifecycle.ABANDONED: frozenset(),
    PaymentLifecycle.EXPIRED: frozenset(),
}


class InvalidTransition(ValueError):
    pass


def advance(current: PaymentLifecycle, target: PaymentLifecycle) -> PaymentLifecycle:
    if current is target and current.is_terminal:
        return current
    if target not in _TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot move payment from {current.value} to {target.value}")
    return target


def lifecycle_of(record: Optional[StagedOrderRecord], now: datetime) -> PaymentLifecycle:
    """Derive the lifecycle state a staged record currently represents."""

    if record is None:
        return PaymentLifecycle.EXPIRED
    if record.is_completed:
        return PaymentLifecycle.MATERIALIZED
    if record.is_expired(now):
        return PaymentLifecycle.EXPIRED
    if not record.payment_intent_id:
        return PaymentLifecycle.INITIATED
    return PaymentLifecycle.AWAITING_CONFIRMATION


__all__ = [
    "InvalidTransition",
    "PaymentLifecycle",
    "TERMINAL_STATES",
    "advance",
    "lifecycle_of",
]
