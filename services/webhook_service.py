"""
Stripe webhook consumer.

Handled events:
- payment_intent.succeeded: card and wallet rails
- checkout.session.completed / checkout.session.async_payment_succeeded:
  redirect rail, only when the session's payment_status is "paid"
- payment_intent.canceled: the payment is abandoned (a pre-created order is
  cancelled)

Every verified event is acknowledged, including ones whose processing failed:
the failure is logged with the event id, payment reference and staging id so
the recovery path can replay it. Only a bad signature is rejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from domain.errors import PaymentFlowError, StagingExpiredOrMissing
from domain.payment import STAGING_METADATA_KEY
from repositories.staging_repository import StagingStoreError
from services.reconciliation_service import OrderReconciler, ReconciliationOutcome, ReconciliationSource
from services.stripe_gateway import StripeGateway, WebhookSignatureError

logger = logging.getLogger(__name__)

PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
CHECKOUT_SESSION_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
PAYMENT_INTENT_CANCELED = "payment_intent.canceled"


@dataclass(frozen=True, slots=True)
class WebhookAck:
    event_id: str
    event_type: str
    handled: bool
    outcome: Optional[ReconciliationOutcome] = None
    error: Optional[str] = None


class StripeWebhookService:
    def __init__(self, stripe_gateway: StripeGateway, reconciler: OrderReconciler) -> None:
        self.stripe = stripe_gateway
        self.reconciler = reconciler

    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        """
        Verify and process one delivery.

        Raises:
            WebhookSignatureError: the payload is not signed by Stripe
        """

        try:
            event = self.stripe.construct_event(payload, signature)
        except WebhookSignatureError as e:
            logger.warning("Rejected webhook with invalid signature", extra={"error": str(e)})
            raise
        return self.dispatch(event)

    def dispatch(self, event: Mapping[str, Any]) -> WebhookAck:
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        obj: Dict[str, Any] = (event.get("data") or {}).get("object") or {}

        if event_type == PAYMENT_INTENT_CANCELED:
            return self._abandon(event_id, event_type, obj.get("id"))

        if event_type == PAYMENT_INTENT_SUCCEEDED:
            reference = obj.get("id")
            staging_id = None
        elif event_type in (CHECKOUT_SESSION_COMPLETED, CHECKOUT_SESSION_ASYNC_SUCCEEDED):
            if obj.get("payment_status") != "paid":
                logger.info(
                    "Checkout session not paid yet; waiting for async event",
                    extra={"event_id": event_id, "session_id": obj.get("id")},
                )
                return WebhookAck(event_id=event_id, event_type=event_type, handled=False)
            reference = obj.get("payment_intent")
            staging_id = (obj.get("metadata") or {}).get(STAGING_METADATA_KEY)
        else:
            logger.debug("Ignoring webhook event", extra={"event_id": event_id, "event_type": event_type})
            return WebhookAck(event_id=event_id, event_type=event_type, handled=False)

        context = {"event_id": event_id, "event_type": event_type, "payment_reference": reference, "staging_id": staging_id}
        if not reference:
            logger.error("Webhook event carries no payment reference", extra=context)
            return WebhookAck(event_id=event_id, event_type=event_type, handled=False, error="missing payment reference")

        try:
            # Re-read the payment from Stripe; the event body is not trusted for state.
            payment = self.stripe.retrieve(reference)
            outcome = self.reconciler.reconcile(
                payment,
                self.stripe,
                source=ReconciliationSource.WEBHOOK,
                staging_id=staging_id,
            )
        except StagingExpiredOrMissing as e:
            logger.error("No staged draft for captured payment; nothing to reconcile", extra={**context, "error": e.message})
            return WebhookAck(event_id=event_id, event_type=event_type, handled=False, error=e.code)
        except PaymentFlowError as e:
            logger.error(
                "Webhook processing failed",
                extra={**context, "error_code": e.code, "error": e.message, **e.context},
            )
            return WebhookAck(event_id=event_id, event_type=event_type, handled=False, error=e.code)
        except StagingStoreError as e:
            logger.error("Staging store unavailable during webhook", extra={**context, "error": str(e)})
            return WebhookAck(event_id=event_id, event_type=event_type, handled=False, error="STAGING_UNAVAILABLE")

        logger.info(
            "Webhook reconciled",
            extra={**context, "order_id": outcome.order_id, "already_exists": outcome.already_exists},
        )
        return WebhookAck(event_id=event_id, event_type=event_type, handled=True, outcome=outcome)

    def _abandon(self, event_id: str, event_type: str, reference: Optional[str]) -> WebhookAck:
        context = {"event_id": event_id, "event_type": event_type, "payment_reference": reference}
        if not reference:
            logger.error("Webhook event carries no payment reference", extra=context)
            return WebhookAck(event_id=event_id, event_type=event_type, handled=False, error="missing payment reference")
        try:
            payment = self.stripe.retrieve(reference)
            outcome = self.reconciler.abandon(payment, source=ReconciliationSource.WEBHOOK)
        except PaymentFlowError as e:
            logger.error(
                "Webhook processing failed",
                extra={**context, "error_code": e.code, "error": e.message, **e.context},
            )
            return WebhookAck(event_id=event_id, event_type=event_type, handled=False, error=e.code)
        return WebhookAck(event_id=event_id, event_type=event_type, handled=True, outcome=outcome)


__all__ = [
    "CHECKOUT_SESSION_ASYNC_SUCCEEDED",
    "CHECKOUT_SESSION_COMPLETED",
    "PAYMENT_INTENT_CANCELED",
    "PAYMENT_INTENT_SUCCEEDED",
    "StripeWebhookService",
    "WebhookAck",
]
