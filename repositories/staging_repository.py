"""
Staging repository (persistence of order drafts awaiting payment).

Two interchangeable stores implement the same contract:

- `SupabaseStagingStore`: a `staged_orders` table row per draft. The terminal
  transition is a conditional update (`status = 'pending'` guard), so it acts
  as a compare-and-swap across server instances.
- `InMemoryStagingStore`: process-local map guarded by a lock. Only safe for a
  single instance (development, tests).

Contract shared by both:
- `set` fails closed: it returns False on storage error and callers must
  abort the payment flow.
- `get` / `get_by_payment_intent` return None when the draft is absent *or*
  older than the TTL.
- `mark_completed` returns True only for the caller that performed the
  pending -> completed transition.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from domain.staged_order import (
    STAGING_TTL,
    StagedOrderRecord,
    StagingStatus,
    generate_staging_id,
)
from domain.time import parse_utc_datetime, to_iso_utc, utc_now

logger = logging.getLogger(__name__)

# Supabase table name for staged drafts.
# Keep this aligned with db/staged_orders.sql.
_STAGED_ORDERS_TABLE: str = "staged_orders"

Clock = Callable[[], datetime]


class StagingStoreError(RuntimeError):
    """Raised when the staging backend cannot be read."""


class StagingStore:
    """Behaviour common to every staging backend (id generation, TTL, clock)."""

    def __init__(self, *, ttl: timedelta = STAGING_TTL, clock: Clock = utc_now) -> None:
        self.ttl = ttl
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def generate_id(self, prefix: str = "payment") -> str:
        return generate_staging_id(prefix)

    def _visible(self, record: Optional[StagedOrderRecord]) -> Optional[StagedOrderRecord]:
        if record is None:
            return None
        if record.is_expired(self.now(), self.ttl):
            logger.info(
                "Staged draft expired",
                extra={"staging_id": record.staging_id, "created_at": record.created_at.isoformat()},
            )
            return None
        return record

    def set(self, staging_id: str, record: StagedOrderRecord) -> bool:
        raise NotImplementedError

    def get(self, staging_id: str) -> Optional[StagedOrderRecord]:
        raise NotImplementedError

    def set_payment_intent_id(self, staging_id: str, payment_intent_id: str) -> bool:
        raise NotImplementedError

    def get_by_payment_intent(self, payment_intent_id: str) -> Optional[StagedOrderRecord]:
        raise NotImplementedError

    def mark_completed(
        self,
        staging_id: str,
        *,
        final_order_id: int,
        payment_intent_id: Optional[str] = None,
    ) -> bool:
        raise NotImplementedError

    def delete(self, staging_id: str) -> bool:
        raise NotImplementedError

    def sweep_expired(self) -> int:
        raise NotImplementedError


class InMemoryStagingStore(StagingStore):
    def __init__(self, *, ttl: timedelta = STAGING_TTL, clock: Clock = utc_now) -> None:
        super().__init__(ttl=ttl, clock=clock)
        self._lock = threading.Lock()
        self._records: Dict[str, StagedOrderRecord] = {}
        self._by_payment_intent: Dict[str, str] = {}

    def set(self, staging_id: str, record: StagedOrderRecord) -> bool:
        if record.staging_id != staging_id:
            record = replace(record, staging_id=staging_id)
        with self._lock:
            self._records[staging_id] = record
            if record.payment_intent_id:
                self._by_payment_intent[record.payment_intent_id] = staging_id
        return True

    def get(self, staging_id: str) -> Optional[StagedOrderRecord]:
        with self._lock:
            record = self._records.get(staging_id)
        return self._visible(record)

    def set_payment_intent_id(self, staging_id: str, payment_intent_id: str) -> bool:
        with self._lock:
            record = self._records.get(staging_id)
            if record is None:
                return False
            self._records[staging_id] = record.linked(payment_intent_id)
            self._by_payment_intent[payment_intent_id] = staging_id
        return True

    def get_by_payment_intent(self, payment_intent_id: str) -> Optional[StagedOrderRecord]:
        with self._lock:
            staging_id = self._by_payment_intent.get(payment_intent_id)
            record = self._records.get(staging_id) if staging_id else None
        return self._visible(record)

    def mark_completed(
        self,
        staging_id: str,
        *,
        final_order_id: int,
        payment_intent_id: Optional[str] = None,
    ) -> bool:
        with self._lock:
            record = self._records.get(staging_id)
            if record is None or record.is_completed:
                return False
            completed = record.completed(final_order_id, payment_intent_id, self.now())
            self._records[staging_id] = completed
            if completed.payment_intent_id:
                self._by_payment_intent[completed.payment_intent_id] = staging_id
        return True

    def delete(self, staging_id: str) -> bool:
        with self._lock:
            record = self._records.pop(staging_id, None)
            if record is not None and record.payment_intent_id:
                self._by_payment_intent.pop(record.payment_intent_id, None)
        return record is not None

    def sweep_expired(self) -> int:
        now = self.now()
        with self._lock:
            expired = [
                staging_id
                for staging_id, record in self._records.items()
                if record.is_expired(now, self.ttl)
            ]
            for staging_id in expired:
                record = self._records.pop(staging_id)
                if record.payment_intent_id:
                    self._by_payment_intent.pop(record.payment_intent_id, None)
        return len(expired)


def _row_to_record(row: Mapping[str, Any]) -> StagedOrderRecord:
    """Convert a Supabase row into a StagedOrderRecord."""

    return StagedOrderRecord(
        staging_id=str(row["id"]),
        order_payload=row.get("order_payload") or {},
        created_at=parse_utc_datetime(row["created_at_utc"]),
        points_to_redeem=int(row.get("points_to_redeem") or 0),
        points_discount=Decimal(str(row.get("points_discount") or "0")),
        payment_intent_id=row.get("payment_intent_id"),
        status=StagingStatus(str(row.get("status") or StagingStatus.PENDING.value)),
        final_order_id=int(row["final_order_id"]) if row.get("final_order_id") else None,
        completed_at=parse_utc_datetime(row["completed_at_utc"]) if row.get("completed_at_utc") else None,
    )


def _record_to_row(record: StagedOrderRecord) -> dict[str, Any]:
    return {
        "id": record.staging_id,
        "order_payload": dict(record.order_payload),
        "points_to_redeem": record.points_to_redeem,
        "points_discount": str(record.points_discount),
        "payment_intent_id": record.payment_intent_id,
        "status": record.status.value,
        "final_order_id": record.final_order_id,
        "created_at_utc": to_iso_utc(record.created_at, name="created_at"),
        "completed_at_utc": (
            to_iso_utc(record.completed_at, name="completed_at") if record.completed_at else None
        ),
    }


class SupabaseStagingStore(StagingStore):
    def __init__(
        self,
        client_factory: Callable[[], Any],
        *,
        ttl: timedelta = STAGING_TTL,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(ttl=ttl, clock=clock)
        self._client_factory = client_factory

    def _table(self) -> Any:
        return self._client_factory().table(_STAGED_ORDERS_TABLE)

    def _fetch_one(self, column: str, value: str) -> Optional[StagedOrderRecord]:
        try:
            response = (
                self._table()
                .select("*")
                .eq(column, value)
                .order("created_at_utc", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise StagingStoreError(f"Failed to read staged draft ({column}={value}): {e}") from e

        error = getattr(response, "error", None)
        if error:
            raise StagingStoreError(f"Failed to read staged draft ({column}={value}): {error}")

        rows = getattr(response, "data", None) or []
        if not rows:
            return None
        return _row_to_record(rows[0])

    def set(self, staging_id: str, record: StagedOrderRecord) -> bool:
        if record.staging_id != staging_id:
            record = replace(record, staging_id=staging_id)
        try:
            response = self._table().upsert(_record_to_row(record)).execute()
        except Exception:
            logger.exception("Failed to persist staged draft", extra={"staging_id": staging_id})
            return False

        error = getattr(response, "error", None)
        if error:
            logger.error(
                "Failed to persist staged draft",
                extra={"staging_id": staging_id, "error": str(error)},
            )
            return False
        return True

    def get(self, staging_id: str) -> Optional[StagedOrderRecord]:
        return self._visible(self._fetch_one("id", staging_id))

    def set_payment_intent_id(self, staging_id: str, payment_intent_id: str) -> bool:
        try:
            response = (
                self._table()
                .update({"payment_intent_id": payment_intent_id})
                .eq("id", staging_id)
                .execute()
            )
        except Exception:
            logger.exception(
                "Failed to link payment to staged draft",
                extra={"staging_id": staging_id, "payment_reference": payment_intent_id},
            )
            return False
        return bool(getattr(response, "data", None))

    def get_by_payment_intent(self, payment_intent_id: str) -> Optional[StagedOrderRecord]:
        return self._visible(self._fetch_one("payment_intent_id", payment_intent_id))

    def mark_completed(
        self,
        staging_id: str,
        *,
        final_order_id: int,
        payment_intent_id: Optional[str] = None,
    ) -> bool:
        payload: dict[str, Any] = {
            "status": StagingStatus.COMPLETED.value,
            "final_order_id": final_order_id,
            "completed_at_utc": to_iso_utc(self.now(), name="completed_at"),
        }
        if payment_intent_id is not None:
            payload["payment_intent_id"] = payment_intent_id

        # Conditional update: only the caller that sees the row still pending wins.
        try:
            response = (
                self._table()
                .update(payload)
                .eq("id", staging_id)
                .eq("status", StagingStatus.PENDING.value)
                .execute()
            )
        except Exception as e:
            raise StagingStoreError(f"Failed to complete staged draft {staging_id}: {e}") from e
        error = getattr(response, "error", None)
        if error:
            raise StagingStoreError(f"Failed to complete staged draft {staging_id}: {error}")
        return bool(getattr(response, "data", None))

    def delete(self, staging_id: str) -> bool:
        try:
            response = self._table().delete().eq("id", staging_id).execute()
        except Exception as e:
            raise StagingStoreError(f"Failed to delete staged draft {staging_id}: {e}") from e
        error = getattr(response, "error", None)
        if error:
            raise StagingStoreError(f"Failed to delete staged draft {staging_id}: {error}")
        return bool(getattr(response, "data", None))

    def sweep_expired(self) -> int:
        cutoff = self.now() - self.ttl
        try:
            response = (
                self._table()
                .delete()
                .lt("created_at_utc", to_iso_utc(cutoff, name="cutoff"))
                .execute()
            )
        except Exception as e:
            raise StagingStoreError(f"Failed to sweep staged drafts: {e}") from e
        error = getattr(response, "error", None)
        if error:
            raise StagingStoreError(f"Failed to sweep staged drafts: {error}")
        return len(getattr(response, "data", None) or [])


__all__ = [
    "InMemoryStagingStore",
    "StagingStore",
    "StagingStoreError",
    "SupabaseStagingStore",
]
