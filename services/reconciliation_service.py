"""
Order reconciliation service.

The single transition every reconciliation path (webhook, fallback/polling,
recovery, PayPal capture, pre-created order completion) goes through to turn
a captured payment into exactly one authoritative order.

Duplicate checks, all consulted before any insert:
1. Staging completed-index: a draft linked to this payment already completed.
2. Idempotency stamp: the payment object's metadata already names an order.
3. Recent-orders scan: an order in the backend-of-record already carries the
   payment reference (last-resort safety net).
Then the staged draft itself is checked for its terminal state.

After a successful create the stamp is written synchronously, before
returning, so any competing path that reads it afterwards stops. Two paths
that both pass every check before either stamps can still race; closing that
window needs a uniqueness constraint on the payment reference in the
backend-of-record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from domain.errors import (
    DownstreamCreationFailure,
    StagingExpiredOrMissing,
    UpstreamVerificationError,
)
from domain.lifecycle import PaymentLifecycle, advance, lifecycle_of
from domain.order import (
    META_STRIPE_PAYMENT_INTENT,
    CENT,
    build_paid_order_payload,
    compute_draft_total,
)
from domain.payment import PaymentIntentRef
from domain.staged_order import StagedOrderRecord
from repositories.order_repository import OrderBackendError, WooCommerceOrderRepository
from repositories.staging_repository import StagingStore, StagingStoreError
from services.gateway import PaymentGateway
from services.loyalty_service import PointsRedemption, PointsRedemptionOutbox

logger = logging.getLogger(__name__)

RECENT_ORDERS_SCAN_LIMIT = 50


class ReconciliationSource(str, Enum):
    WEBHOOK = "webhook"
    FALLBACK = "fallback"
    RECOVERY = "recovery"
    CAPTURE = "capture"
    COMPLETE_PAYMENT = "complete_payment"


class Resolution(str, Enum):
    STAGING_INDEX = "staging_index"
    PAYMENT_STAMP = "payment_stamp"
    RECENT_ORDERS = "recent_orders"
    STAGED_DRAFT_COMPLETED = "staged_draft_completed"
    PRE_CREATED_ORDER = "pre_created_order"
    MATERIALIZED = "materialized"
    NOT_READY = "not_ready"
    ABANDONED = "abandoned"


@dataclass(frozen=True, slots=True)
class ReconciliationOutcome:
    payment_reference: str
    lifecycle: PaymentLifecycle
    resolution: Resolution
    order_id: Optional[int] = None
    already_exists: bool = False
    staging_id: Optional[str] = None
    points_to_redeem: int = 0

    @property
    def ready(self) -> bool:
        return self.order_id is not None


_ORDER_NOTES: Dict[ReconciliationSource, str] = {
    ReconciliationSource.WEBHOOK: "Order created from payment webhook. Payment reference: {ref}",
    ReconciliationSource.FALLBACK: "Order created via fallback (webhook not yet delivered). Payment reference: {ref}",
    ReconciliationSource.RECOVERY: "Order recovered after the browser closed before completion. Payment reference: {ref}",
    ReconciliationSource.CAPTURE: "Order created after payment capture. Payment reference: {ref}",
    ReconciliationSource.COMPLETE_PAYMENT: "Order completed by client confirmation. Payment reference: {ref}",
}


class OrderReconciler:
    def __init__(
        self,
        staging: StagingStore,
        orders: WooCommerceOrderRepository,
        outbox: PointsRedemptionOutbox,
        *,
        recent_orders_limit: int = RECENT_ORDERS_SCAN_LIMIT,
    ) -> None:
        self.staging = staging
        self.orders = orders
        self.outbox = outbox
        self.recent_orders_limit = recent_orders_limit

    # ------------------------------------------------------------------
    # Duplicate detection
    # ------------------------------------------------------------------

    def find_existing(
        self,
        payment: PaymentIntentRef,
        gateway: PaymentGateway,
    ) -> Optional[ReconciliationOutcome]:
        """Return the order already produced by `payment`, if any."""

        reference = payment.reference
        indexed = self.staging.get_by_payment_intent(reference)
        if indexed is not None and indexed.is_completed and indexed.final_order_id:
            return self._existing(payment, indexed.final_order_id, Resolution.STAGING_INDEX, indexed.staging_id)

        if payment.linked_order_id is not None:
            return self._existing(payment, payment.linked_order_id, Resolution.PAYMENT_STAMP, payment.staging_id)

        order = self._scan_recent_orders(reference)
        if order is not None:
            logger.info(
                "Order for payment found by recent-orders scan",
                extra={"payment_reference": reference, "order_id": order.order_id},
            )
            self._stamp(gateway, payment, order.order_id)
            staging_id = payment.staging_id or (indexed.staging_id if indexed else None)
            if staging_id:
                self._complete_staging(staging_id, order.order_id, reference)
            return self._existing(payment, order.order_id, Resolution.RECENT_ORDERS, staging_id)

        return None

    def _scan_recent_orders(self, reference: str):
        try:
            recent = self.orders.list_recent_orders(limit=self.recent_orders_limit)
        except OrderBackendError as e:
            logger.warning(
                "Recent-orders scan failed; continuing without it",
                extra={"payment_reference": reference, "error": str(e)},
            )
            return None
        return next((order for order in recent if order.carries_payment_reference(reference)), None)

    @staticmethod
    def _existing(
        payment: PaymentIntentRef,
        order_id: int,
        resolution: Resolution,
        staging_id: Optional[str],
    ) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            payment_reference=payment.reference,
            lifecycle=PaymentLifecycle.MATERIALIZED,
            resolution=resolution,
            order_id=order_id,
            already_exists=True,
            staging_id=staging_id,
        )

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    def reconcile(
        self,
        payment: PaymentIntentRef,
        gateway: PaymentGateway,
        *,
        source: ReconciliationSource,
        staging_id: Optional[str] = None,
    ) -> ReconciliationOutcome:
        """
        Materialize the order for a captured payment, at most once.

        Args:
            payment: Payment state freshly read from the processor
            gateway: Gateway that produced `payment` (used for the stamp)
            source: Which path is reconciling (order note, recovery flag)
            staging_id: Staged draft id when the caller knows it; otherwise
                the one carried by the payment metadata

        Raises:
            UpstreamVerificationError: payment not captured, or it does not
                belong to / match the staged draft
            StagingExpiredOrMissing: the draft is gone (operator recovery needed)
            DownstreamCreationFailure: the backend-of-record rejected the order
        """

        context = {"payment_reference": payment.reference, "source": source.value, "rail": payment.rail.value}
        if not payment.captured:
            raise UpstreamVerificationError(
                f"Payment {payment.reference} is not captured (status: {payment.status})",
                context=context,
            )

        existing = self.find_existing(payment, gateway)
        if existing is not None:
            logger.info(
                "Payment already reconciled",
                extra={**context, "order_id": existing.order_id, "resolution": existing.resolution.value},
            )
            return existing

        if payment.pre_created_order_id is not None:
            return self.settle_pre_created(payment, gateway, source=source)

        if staging_id and payment.staging_id and staging_id != payment.staging_id:
            raise UpstreamVerificationError(
                f"Payment {payment.reference} belongs to staged draft {payment.staging_id}, not {staging_id}",
                context=context,
            )
        staging_id = staging_id or payment.staging_id
        context["staging_id"] = staging_id
        if not staging_id:
            raise StagingExpiredOrMissing(
                f"Payment {payment.reference} carries no staged draft reference",
                context=context,
            )

        record = self.staging.get(staging_id)
        if record is None:
            raise StagingExpiredOrMissing(
                f"Staged draft {staging_id} not found or expired for payment {payment.reference}",
                context=context,
            )
        if record.is_completed and record.final_order_id:
            return ReconciliationOutcome(
                payment_reference=payment.reference,
                lifecycle=PaymentLifecycle.MATERIALIZED,
                resolution=Resolution.STAGED_DRAFT_COMPLETED,
                order_id=record.final_order_id,
                already_exists=True,
                staging_id=staging_id,
            )

        return self._materialize(payment, gateway, record, source=source, context=context)

    def _materialize(
        self,
        payment: PaymentIntentRef,
        gateway: PaymentGateway,
        record: StagedOrderRecord,
        *,
        source: ReconciliationSource,
        context: Dict[str, Any],
    ) -> ReconciliationOutcome:
        expected = compute_draft_total(record.order_payload)
        if abs(expected - payment.amount) > CENT:
            raise UpstreamVerificationError(
                f"Captured amount {payment.amount} does not match staged total {expected}",
                context={**context, "expected": str(expected), "captured": str(payment.amount)},
            )

        current = lifecycle_of(record, self.staging.now())
        if current is PaymentLifecycle.INITIATED:
            # The provider link write may have failed; the captured payment still exists.
            current = advance(current, PaymentLifecycle.AWAITING_CONFIRMATION)
        lifecycle = advance(current, PaymentLifecycle.MATERIALIZED)

        payload = build_paid_order_payload(
            record.order_payload,
            rail=payment.rail,
            payment_reference=payment.reference,
            staging_id=record.staging_id,
            recovered=source is ReconciliationSource.RECOVERY,
            payment_method=payment.payment_method,
        )
        try:
            order = self.orders.create_order(payload)
        except OrderBackendError as e:
            logger.error(
                "Order creation failed for captured payment; operator action required",
                extra={**context, "error": str(e)},
            )
            raise DownstreamCreationFailure(
                f"Backend rejected order for payment {payment.reference}: {e}",
                context=context,
            ) from e

        context["order_id"] = order.order_id
        self._stamp(gateway, payment, order.order_id)

        if not self._complete_staging(record.staging_id, order.order_id, payment.reference):
            logger.warning(
                "Staged draft was completed by a concurrent path; possible duplicate order",
                extra=context,
            )

        self._add_note(order.order_id, _ORDER_NOTES[source].format(ref=payment.reference))

        if record.points_to_redeem > 0 and record.customer_id > 0:
            self.outbox.enqueue(
                PointsRedemption(
                    user_id=record.customer_id,
                    points=record.points_to_redeem,
                    order_id=order.order_id,
                )
            )

        logger.info("Order materialized", extra=context)
        return ReconciliationOutcome(
            payment_reference=payment.reference,
            lifecycle=lifecycle,
            resolution=Resolution.MATERIALIZED,
            order_id=order.order_id,
            already_exists=False,
            staging_id=record.staging_id,
            points_to_redeem=record.points_to_redeem,
        )

    def settle_pre_created(
        self,
        payment: PaymentIntentRef,
        gateway: PaymentGateway,
        *,
        source: ReconciliationSource,
    ) -> ReconciliationOutcome:
        """Mark an order created before the charge as paid and stamp the payment."""

        order_id = payment.pre_created_order_id
        context = {"payment_reference": payment.reference, "order_id": order_id, "source": source.value}
        if order_id is None:
            raise UpstreamVerificationError(
                f"Payment {payment.reference} does not reference a pre-created order",
                context=context,
            )
        if not payment.captured:
            raise UpstreamVerificationError(
                f"Payment {payment.reference} is not captured (status: {payment.status})",
                context=context,
            )

        try:
            self.orders.update_order(
                order_id,
                {
                    "status": "processing",
                    "set_paid": True,
                    "transaction_id": payment.reference,
                    "meta_data": [{"key": META_STRIPE_PAYMENT_INTENT, "value": payment.reference}],
                },
            )
        except OrderBackendError as e:
            logger.error("Failed to mark pre-created order paid", extra={**context, "error": str(e)})
            raise DownstreamCreationFailure(
                f"Backend rejected payment update for order {order_id}: {e}",
                context=context,
            ) from e

        self._stamp(gateway, payment, order_id)
        logger.info("Pre-created order marked paid", extra=context)
        return ReconciliationOutcome(
            payment_reference=payment.reference,
            lifecycle=PaymentLifecycle.MATERIALIZED,
            resolution=Resolution.PRE_CREATED_ORDER,
            order_id=order_id,
            already_exists=False,
        )

    def abandon(
        self,
        payment: PaymentIntentRef,
        *,
        source: ReconciliationSource,
    ) -> ReconciliationOutcome:
        """
        Record that a payment was cancelled before capture.

        A pre-created order is cancelled; a staged draft is left for the TTL
        sweep. Captured payments are never abandoned.
        """

        context = {"payment_reference": payment.reference, "source": source.value, "rail": payment.rail.value}
        if payment.captured or not payment.failed:
            raise UpstreamVerificationError(
                f"Payment {payment.reference} is not cancelled (status: {payment.status})",
                context=context,
            )

        lifecycle = advance(PaymentLifecycle.AWAITING_CONFIRMATION, PaymentLifecycle.ABANDONED)
        order_id = payment.pre_created_order_id
        if order_id is not None:
            try:
                self.orders.update_order(order_id, {"status": "cancelled"})
            except OrderBackendError as e:
                logger.error("Failed to cancel order for abandoned payment", extra={**context, "order_id": order_id, "error": str(e)})
            else:
                logger.info("Order cancelled for abandoned payment", extra={**context, "order_id": order_id})

        logger.info("Payment abandoned", extra={**context, "staging_id": payment.staging_id})
        return ReconciliationOutcome(
            payment_reference=payment.reference,
            lifecycle=lifecycle,
            resolution=Resolution.ABANDONED,
            staging_id=payment.staging_id,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _stamp(self, gateway: PaymentGateway, payment: PaymentIntentRef, order_id: int) -> None:
        try:
            gateway.stamp_order(payment, order_id)
        except Exception:
            logger.exception(
                "Failed to write idempotency stamp",
                extra={"payment_reference": payment.reference, "order_id": order_id},
            )

    def _complete_staging(self, staging_id: str, order_id: int, reference: str) -> bool:
        try:
            return self.staging.mark_completed(
                staging_id, final_order_id=order_id, payment_intent_id=reference
            )
        except StagingStoreError as e:
            logger.error(
                "Failed to mark staged draft completed",
                extra={"staging_id": staging_id, "order_id": order_id, "error": str(e)},
            )
            return False

    def _add_note(self, order_id: int, note: str) -> None:
        try:
            self.orders.add_order_note(order_id, note)
        except OrderBackendError as e:
            logger.warning("Failed to add order note", extra={"order_id": order_id, "error": str(e)})


def not_ready(payment: PaymentIntentRef) -> ReconciliationOutcome:
    return ReconciliationOutcome(
        payment_reference=payment.reference,
        lifecycle=PaymentLifecycle.AWAITING_CONFIRMATION,
        resolution=Resolution.NOT_READY,
        staging_id=payment.staging_id,
    )


__all__ = [
    "OrderReconciler",
    "ReconciliationOutcome",
    "ReconciliationSource",
    "Resolution",
    "not_ready",
]
