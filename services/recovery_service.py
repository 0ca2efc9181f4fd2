"""
Order recovery service.

Operator or scheduled replay for payments whose order never appeared (the
buyer closed the browser and the webhook failed or never came). The caller's
claim that the payment succeeded is never trusted: capture status is re-read
from the processor, then the same duplicate-check-then-materialize sequence
as the webhook runs. Calling it again with the same inputs returns the same
order.
"""

from __future__ import annotations

import logging

from domain.errors import UpstreamVerificationError, ValidationError
from domain.payment import PaymentRail
from services.payment_lookup import PaymentLookup
from services.reconciliation_service import OrderReconciler, ReconciliationOutcome, ReconciliationSource

logger = logging.getLogger(__name__)


class OrderRecoveryService:
    def __init__(self, lookup: PaymentLookup, reconciler: OrderReconciler) -> None:
        self.lookup = lookup
        self.reconciler = reconciler

    def recover(self, staging_id: str, payment_reference: str, rail: PaymentRail) -> ReconciliationOutcome:
        if not staging_id:
            raise ValidationError("staging_id is required")

        context = {"staging_id": staging_id, "payment_reference": payment_reference, "rail": rail.value}
        logger.info("Recovery requested", extra=context)

        resolved, _ = self.lookup.resolve_reference(rail, payment_reference)
        if resolved is None:
            raise UpstreamVerificationError(
                f"Checkout session {payment_reference} has no payment yet",
                context=context,
            )

        gateway = self.lookup.gateway_for(rail)
        payment = gateway.retrieve(resolved)
        outcome = self.reconciler.reconcile(
            payment,
            gateway,
            source=ReconciliationSource.RECOVERY,
            staging_id=staging_id,
        )
        logger.info(
            "Recovery finished",
            extra={**context, "order_id": outcome.order_id, "already_exists": outcome.already_exists},
        )
        return outcome


__all__ = ["OrderRecoveryService"]
