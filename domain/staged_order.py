"""
Domain: staged order drafts.

A staged draft is the not-yet-authoritative order payload held while the
buyer pays. It is written before any charge is requested and is consumed
exactly once by whichever reconciliation path wins.

Contract excerpts implemented here:
- A draft is created `pending`, may be linked to a provider payment id, and
  moves to `completed` exactly once.
- A draft older than the TTL (30 minutes) is treated as absent by readers.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from .time import require_utc_timestamp

STAGING_TTL: timedelta = timedelta(minutes=30)


class StagingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


def generate_staging_id(prefix: str = "payment") -> str:
    """Opaque unique id: provider-scoped prefix, millisecond clock, randomness."""

    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


@dataclass(frozen=True, slots=True)
class StagedOrderRecord:
    """
    Immutable snapshot of a staged draft.

    Transitions return new instances; the store decides whether a transition
    may be persisted.
    """

    staging_id: str
    order_payload: Mapping[str, Any]
    created_at: datetime
    points_to_redeem: int = 0
    points_discount: Decimal = Decimal("0")
    payment_intent_id: Optional[str] = None
    status: StagingStatus = StagingStatus.PENDING
    final_order_id: Optional[int] = None
    completed_at: Optional[datetime] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if self.completed_at is not None:
            require_utc_timestamp("completed_at", self.completed_at)
        if not self.staging_id:
            raise ValueError("staging_id must be a non-empty string")
        if self.points_to_redeem < 0:
            raise ValueError("points_to_redeem must be >= 0")
        if self.points_discount < 0:
            raise ValueError("points_discount must be >= 0")

    @property
    def is_completed(self) -> bool:
        return self.status is StagingStatus.COMPLETED

    @property
    def customer_id(self) -> int:
        """Buyer identity carried by the draft (0 for guests)."""
        try:
            return int(self.order_payload.get("customer_id") or 0)
        except (TypeError, ValueError):
            return 0

    def is_expired(self, now: datetime, ttl: timedelta = STAGING_TTL) -> bool:
        require_utc_timestamp("now", now)
        return now - self.created_at >= ttl

    def linked(self, payment_intent_id: str) -> StagedOrderRecord:
        return replace(self, payment_intent_id=payment_intent_id)

    def completed(
        self,
        final_order_id: int,
        payment_intent_id: Optional[str],
        completed_at: datetime,
    ) -> StagedOrderRecord:
        """
        Terminal transition that keeps the record.

        Raises:
            ValueError: if the draft already completed (single terminal transition).
        """

        if self.is_completed:
            raise ValueError(
                f"Staged draft {self.staging_id} already completed as order {self.final_order_id}"
            )
        return replace(
            self,
            status=StagingStatus.COMPLETED,
            final_order_id=final_order_id,
            payment_intent_id=payment_intent_id or self.payment_intent_id,
            completed_at=completed_at,
        )


__all__ = [
    "STAGING_TTL",
    "StagingStatus",
    "StagedOrderRecord",
    "generate_staging_id",
]
