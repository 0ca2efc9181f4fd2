"""
Loyalty points redemption.

Points are deducted from the buyer's balance only after an order has been
materialized. The deduction never blocks or rolls back the order: the
reconciliation path enqueues a `PointsRedemption` into the outbox and returns;
the outbox is drained after the HTTP response and by the recovery script, and
keeps failed deliveries for retry until they are parked as dead letters.
Only the most recent settled order ids and dead letters are remembered.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, replace
from typing import Any, Deque, Dict, List, Optional, Set

import httpx

logger = logging.getLogger(__name__)

DEDUCT_PATH = "wp-json/dreamshop-points/v1/points/deduct-only"


class LoyaltyLedgerError(RuntimeError):
    """Raised when the ledger rejects or fails a deduction."""


@dataclass(frozen=True, slots=True)
class PointsRedemption:
    user_id: int
    points: int
    order_id: int
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def description(self) -> str:
        return f"Points redeemed for order #{self.order_id}"


@dataclass(frozen=True, slots=True)
class DeductionResult:
    success: bool
    new_balance: Optional[int]
    message: str = ""


class LoyaltyLedgerClient:
    """Loyalty ledger service, authenticated by a static API key."""

    def __init__(self, client: httpx.Client, api_key: str) -> None:
        if not api_key:
            raise RuntimeError("Missing POINTS_API_KEY. Set it to the loyalty ledger API key.")
        self._client = client
        self._api_key = api_key

    @classmethod
    def from_credentials(cls, base_url: str, api_key: str, *, timeout: float = 10.0) -> LoyaltyLedgerClient:
        return cls(httpx.Client(base_url=f"{base_url.rstrip('/')}/", timeout=timeout), api_key)

    def deduct_points(self, user_id: int, points: int, order_id: int, description: str = "") -> DeductionResult:
        body: Dict[str, Any] = {
            "user_id": user_id,
            "points": points,
            "order_id": order_id,
            "description": description or f"Points redeemed for order #{order_id}",
        }
        try:
            response = self._client.post(DEDUCT_PATH, json=body, headers={"X-API-Key": self._api_key})
        except httpx.HTTPError as e:
            raise LoyaltyLedgerError(f"Loyalty ledger unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400 or not data.get("success"):
            raise LoyaltyLedgerError(
                f"Points deduction rejected ({response.status_code}): {data.get('message') or response.text[:200]}"
            )
        new_balance = data.get("new_balance")
        return DeductionResult(
            success=True,
            new_balance=int(new_balance) if new_balance is not None else None,
            message=str(data.get("message") or ""),
        )


@dataclass(frozen=True, slots=True)
class DrainReport:
    delivered: int = 0
    retried: int = 0
    dead_lettered: int = 0


class PointsRedemptionOutbox:
    def __init__(self, ledger: Any, *, max_attempts: int = 5, history: int = 1000) -> None:
        self.ledger = ledger
        self.max_attempts = max_attempts
        self.history = history
        self._pending: List[PointsRedemption] = []
        self._dead_letters: Deque[PointsRedemption] = deque(maxlen=history)
        # Orders queued or in flight; settled ids move to the bounded `_settled`.
        self._seen_orders: Set[int] = set()
        self._settled: "OrderedDict[int, None]" = OrderedDict()
        self._lock = threading.Lock()

    def enqueue(self, redemption: PointsRedemption) -> bool:
        """Queue a deduction; returns False when there is nothing to do or it is already queued."""

        if redemption.points <= 0 or redemption.user_id <= 0:
            return False
        with self._lock:
            if redemption.order_id in self._seen_orders or redemption.order_id in self._settled:
                return False
            self._seen_orders.add(redemption.order_id)
            self._pending.append(redemption)
        logger.info(
            "Points redemption queued",
            extra={"order_id": redemption.order_id, "user_id": redemption.user_id, "points": redemption.points},
        )
        return True

    @property
    def pending(self) -> List[PointsRedemption]:
        with self._lock:
            return list(self._pending)

    @property
    def dead_letters(self) -> List[PointsRedemption]:
        with self._lock:
            return list(self._dead_letters)

    def drain(self) -> DrainReport:
        with self._lock:
            batch, self._pending = self._pending, []

        delivered = retried = dead = 0
        for redemption in batch:
            try:
                result = self.ledger.deduct_points(
                    redemption.user_id, redemption.points, redemption.order_id, redemption.description
                )
            except Exception as e:
                failed = replace(redemption, attempts=redemption.attempts + 1, last_error=str(e))
                if failed.attempts >= self.max_attempts:
                    dead += 1
                    logger.error(
                        "Points redemption abandoned after retries",
                        extra={"order_id": failed.order_id, "user_id": failed.user_id, "error": failed.last_error},
                    )
                    with self._lock:
                        self._dead_letters.append(failed)
                        self._settle(failed.order_id)
                else:
                    retried += 1
                    logger.warning(
                        "Points redemption failed, will retry",
                        extra={"order_id": failed.order_id, "attempts": failed.attempts, "error": failed.last_error},
                    )
                    with self._lock:
                        self._pending.append(failed)
                continue

            with self._lock:
                self._settle(redemption.order_id)
            delivered += 1
            logger.info(
                "Points redeemed",
                extra={"order_id": redemption.order_id, "user_id": redemption.user_id, "new_balance": result.new_balance},
            )

        return DrainReport(delivered=delivered, retried=retried, dead_lettered=dead)

    def _settle(self, order_id: int) -> None:
        self._seen_orders.discard(order_id)
        self._settled[order_id] = None
        while len(self._settled) > self.history:
            self._settled.popitem(last=False)


__all__ = [
    "DeductionResult",
    "DrainReport",
    "LoyaltyLedgerClient",
    "LoyaltyLedgerError",
    "PointsRedemption",
    "PointsRedemptionOutbox",
]
