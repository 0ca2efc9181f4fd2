"""
Fallback completion service.

Client-invoked alternative to the webhook: the storefront polls `status`
after the buyer returns from payment, and calls `finalize` when the webhook
is late. "Not ready yet" is a normal result carrying the next polling delay,
not an error; a failed or cancelled payment is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from domain.errors import UpstreamVerificationError, ValidationError
from domain.lifecycle import PaymentLifecycle
from domain.payment import PaymentIntentRef, PaymentRail
from domain.polling import DEFAULT_POLLING_POLICY, PollingPolicy
from repositories.order_repository import WooCommerceOrderRepository
from services.payment_lookup import PaymentLookup
from services.reconciliation_service import (
    OrderReconciler,
    ReconciliationOutcome,
    ReconciliationSource,
    Resolution,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CompletionStatus:
    payment_reference: str
    ready: bool
    lifecycle: PaymentLifecycle
    order_id: Optional[int] = None
    already_exists: bool = False
    retry_after_seconds: Optional[float] = None
    attempt_ceiling: int = DEFAULT_POLLING_POLICY.max_attempts
    escalate: bool = False

    @classmethod
    def from_outcome(cls, outcome: ReconciliationOutcome, policy: PollingPolicy, attempt: int) -> CompletionStatus:
        if outcome.ready:
            return cls(
                payment_reference=outcome.payment_reference,
                ready=True,
                lifecycle=outcome.lifecycle,
                order_id=outcome.order_id,
                already_exists=outcome.already_exists,
                attempt_ceiling=policy.max_attempts,
            )
        return cls.pending(outcome.payment_reference, policy, attempt)

    @classmethod
    def pending(cls, payment_reference: str, policy: PollingPolicy, attempt: int) -> CompletionStatus:
        attempt = max(attempt, 1)
        return cls(
            payment_reference=payment_reference,
            ready=False,
            lifecycle=PaymentLifecycle.AWAITING_CONFIRMATION,
            retry_after_seconds=policy.delay_for(min(attempt, policy.max_attempts)),
            attempt_ceiling=policy.max_attempts,
            escalate=policy.should_escalate(attempt),
        )


class PaymentCompletionService:
    def __init__(
        self,
        lookup: PaymentLookup,
        reconciler: OrderReconciler,
        orders: WooCommerceOrderRepository,
        *,
        polling: PollingPolicy = DEFAULT_POLLING_POLICY,
    ) -> None:
        self.lookup = lookup
        self.reconciler = reconciler
        self.orders = orders
        self.polling = polling

    def _fetch_verified(self, rail: PaymentRail, reference: str) -> tuple[Optional[PaymentIntentRef], Optional[str]]:
        payment_reference, staging_id = self.lookup.resolve_reference(rail, reference)
        if payment_reference is None:
            return None, staging_id
        payment = self.lookup.gateway_for(rail).retrieve(payment_reference)
        if payment.failed:
            raise UpstreamVerificationError(
                f"Payment {payment.reference} failed or was cancelled (status: {payment.status})",
                context={"payment_reference": payment.reference, "rail": rail.value},
            )
        return payment, staging_id

    def status(self, reference: str, rail: PaymentRail, *, attempt: int = 1) -> CompletionStatus:
        """
        Report whether the order for a payment exists yet.

        Consults the staging completed-index, the payment's idempotency stamp
        and the recent-orders scan. Never creates an order.
        """

        payment, _ = self._fetch_verified(rail, reference)
        if payment is None:
            return CompletionStatus.pending(reference, self.polling, attempt)

        existing = self.reconciler.find_existing(payment, self.lookup.gateway_for(rail))
        if existing is not None:
            return CompletionStatus.from_outcome(existing, self.polling, attempt)

        if payment.pre_created_order_id is not None and payment.captured:
            order = self.orders.get_order(payment.pre_created_order_id)
            if order is not None and order.status in ("processing", "completed"):
                return CompletionStatus(
                    payment_reference=payment.reference,
                    ready=True,
                    lifecycle=PaymentLifecycle.MATERIALIZED,
                    order_id=order.order_id,
                    already_exists=True,
                    attempt_ceiling=self.polling.max_attempts,
                )

        status = CompletionStatus.pending(payment.reference, self.polling, attempt)
        if status.escalate:
            logger.warning(
                "Order still not materialized after polling ceiling",
                extra={"payment_reference": payment.reference, "rail": rail.value, "attempt": attempt},
            )
        return status

    def finalize(
        self,
        reference: str,
        rail: PaymentRail,
        *,
        staging_id: Optional[str] = None,
        attempt: int = 1,
    ) -> CompletionStatus:
        """
        Materialize the order now if the payment is captured.

        Returns a pending status (not an error) while the processor still
        reports the payment as processing.
        """

        payment, session_staging_id = self._fetch_verified(rail, reference)
        if payment is None or not payment.captured:
            logger.info(
                "Payment not captured yet; fallback finalize deferred",
                extra={"payment_reference": reference, "rail": rail.value},
            )
            return CompletionStatus.pending(payment.reference if payment else reference, self.polling, attempt)

        outcome = self.reconciler.reconcile(
            payment,
            self.lookup.gateway_for(rail),
            source=ReconciliationSource.FALLBACK,
            staging_id=staging_id or session_staging_id,
        )
        return CompletionStatus.from_outcome(outcome, self.polling, attempt)

    def complete_pre_created(self, order_id: int, payment_reference: str) -> ReconciliationOutcome:
        """
        Mark an order created before the charge as paid.

        The payment must be captured and must reference `order_id`.
        """

        payment = self.lookup.stripe.retrieve(payment_reference)
        if payment.pre_created_order_id != order_id:
            raise ValidationError(
                f"Payment {payment_reference} does not belong to order {order_id}",
            )
        if not payment.captured:
            raise UpstreamVerificationError(
                f"Payment {payment_reference} is not captured (status: {payment.status})",
                context={"payment_reference": payment_reference, "order_id": order_id},
            )

        if payment.linked_order_id == order_id:
            return ReconciliationOutcome(
                payment_reference=payment.reference,
                lifecycle=PaymentLifecycle.MATERIALIZED,
                resolution=Resolution.PAYMENT_STAMP,
                order_id=order_id,
                already_exists=True,
            )
        return self.reconciler.settle_pre_created(
            payment, self.lookup.stripe, source=ReconciliationSource.COMPLETE_PAYMENT
        )

    def capture_paypal(self, paypal_order_id: str) -> ReconciliationOutcome:
        """Capture an approved PayPal order and materialize it."""

        payment = self.lookup.paypal.capture(paypal_order_id)
        logger.info(
            "PayPal capture result",
            extra={"payment_reference": payment.reference, "status": payment.status, "staging_id": payment.staging_id},
        )
        return self.reconciler.reconcile(payment, self.lookup.paypal, source=ReconciliationSource.CAPTURE)


__all__ = ["CompletionStatus", "PaymentCompletionService"]
