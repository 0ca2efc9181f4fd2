"""
Stripe gateway.

Wraps the Stripe SDK calls used by the card, wallet and redirect rails:
PaymentIntents, Checkout Sessions and webhook signature verification. The
API key is passed per call so several configurations can coexist in tests.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import stripe

from domain.errors import PaymentProviderError
from domain.order import from_minor_units, to_minor_units
from domain.payment import (
    PRE_CREATED_ORDER_METADATA_KEY,
    ORDER_STAMP_METADATA_KEY,
    PaymentIntentRef,
    PaymentRail,
)
from services.gateway import PaymentGateway

logger = logging.getLogger(__name__)

RAIL_METADATA_KEY = "rail"


class WebhookSignatureError(ValueError):
    """Raised when a webhook payload fails signature verification."""


@dataclass(frozen=True, slots=True)
class CreatedPaymentIntent:
    payment_intent_id: str
    client_secret: str
    status: str

    @property
    def requires_action(self) -> bool:
        return self.status == "requires_action"


@dataclass(frozen=True, slots=True)
class CheckoutSessionRef:
    session_id: str
    url: Optional[str]
    payment_status: str
    payment_intent_id: Optional[str]
    amount_total: Decimal
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


def _plain_metadata(metadata: Any) -> Dict[str, str]:
    if not metadata:
        return {}
    if hasattr(metadata, "to_dict"):
        metadata = metadata.to_dict()
    return {str(key): str(value) for key, value in metadata.items()}


def _rail_of(metadata: Mapping[str, str]) -> PaymentRail:
    if metadata.get(PRE_CREATED_ORDER_METADATA_KEY):
        return PaymentRail.WALLET
    try:
        return PaymentRail(metadata.get(RAIL_METADATA_KEY, PaymentRail.CARD.value))
    except ValueError:
        return PaymentRail.CARD


def payment_intent_to_ref(intent: Any) -> PaymentIntentRef:
    metadata = _plain_metadata(getattr(intent, "metadata", None))
    status = str(getattr(intent, "status", ""))
    captured = status == "succeeded"
    cents = getattr(intent, "amount_received", None) if captured else getattr(intent, "amount", None)
    return PaymentIntentRef(
        reference=str(intent.id),
        rail=_rail_of(metadata),
        status=status,
        captured=captured,
        amount=from_minor_units(int(cents or 0)),
        currency=str(getattr(intent, "currency", None) or ""),
        metadata=metadata,
        failed=status == "canceled",
    )


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: str, webhook_secret: Optional[str] = None) -> None:
        if not api_key:
            raise RuntimeError(
                "Missing Stripe secret key. Set STRIPE_SECRET_KEY to your Stripe API key."
            )
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    # ------------------------------------------------------------------
    # PaymentIntents
    # ------------------------------------------------------------------

    def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
        payment_method_types: Optional[List[str]] = None,
        payment_method: Optional[str] = None,
        confirm: bool = False,
        return_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> CreatedPaymentIntent:
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "metadata": dict(metadata),
        }
        if payment_method:
            params["payment_method"] = payment_method
            params["confirm"] = confirm
            if return_url:
                params["return_url"] = return_url
        else:
            params["payment_method_types"] = payment_method_types or ["card", "klarna"]
            params["payment_method_options"] = {"card": {"request_three_d_secure": "automatic"}}

        try:
            intent = stripe.PaymentIntent.create(
                api_key=self._api_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(
                f"Stripe PaymentIntent creation failed: {e.user_message or e}",
                context={"error_type": type(e).__name__},
            ) from e

        return CreatedPaymentIntent(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
        )

    def retrieve(self, reference: str) -> PaymentIntentRef:
        try:
            intent = stripe.PaymentIntent.retrieve(reference, api_key=self._api_key)
        except stripe.StripeError as e:
            raise PaymentProviderError(
                f"Stripe PaymentIntent {reference} could not be retrieved: {e}",
                context={"payment_reference": reference},
            ) from e
        return payment_intent_to_ref(intent)

    def update_metadata(self, payment_intent_id: str, metadata: Mapping[str, str]) -> None:
        # Stripe merges metadata keys on update; unspecified keys are kept.
        try:
            stripe.PaymentIntent.modify(
                payment_intent_id, api_key=self._api_key, metadata=dict(metadata)
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(
                f"Stripe PaymentIntent {payment_intent_id} metadata update failed: {e}",
                context={"payment_reference": payment_intent_id},
            ) from e

    def stamp_order(self, payment: PaymentIntentRef, order_id: int) -> None:
        self.update_metadata(payment.reference, {ORDER_STAMP_METADATA_KEY: str(order_id)})

    # ------------------------------------------------------------------
    # Checkout Sessions
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
        payment_method_types: List[str],
        product_name: str,
        success_url: str,
        cancel_url: str,
        locale: Optional[str] = None,
    ) -> CheckoutSessionRef:
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": payment_method_types,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": product_name},
                        "unit_amount": to_minor_units(amount),
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
            # Copy metadata onto the underlying PaymentIntent so it can be stamped.
            "payment_intent_data": {"metadata": dict(metadata)},
        }
        if locale:
            params["locale"] = locale

        try:
            session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        except stripe.StripeError as e:
            raise PaymentProviderError(
                f"Stripe Checkout Session creation failed: {e.user_message or e}",
                context={"error_type": type(e).__name__},
            ) from e
        return self._session_to_ref(session)

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionRef:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._api_key)
        except stripe.StripeError as e:
            raise PaymentProviderError(
                f"Stripe Checkout Session {session_id} could not be retrieved: {e}",
                context={"session_id": session_id},
            ) from e
        return self._session_to_ref(session)

    @staticmethod
    def _session_to_ref(session: Any) -> CheckoutSessionRef:
        payment_intent = getattr(session, "payment_intent", None)
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = payment_intent.id
        return CheckoutSessionRef(
            session_id=str(session.id),
            url=getattr(session, "url", None),
            payment_status=str(getattr(session, "payment_status", None) or "unpaid"),
            payment_intent_id=payment_intent,
            amount_total=from_minor_units(int(getattr(session, "amount_total", None) or 0)),
            metadata=_plain_metadata(getattr(session, "metadata", None)),
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify the signature header and return the event as plain data.

        Raises:
            WebhookSignatureError: missing secret/header or bad signature
        """

        if not signature or not self._webhook_secret:
            raise WebhookSignatureError("Missing signature header or webhook secret")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(str(e)) from e
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e
        return json.loads(payload)


__all__ = [
    "CheckoutSessionRef",
    "CreatedPaymentIntent",
    "RAIL_METADATA_KEY",
    "StripeGateway",
    "WebhookSignatureError",
    "payment_intent_to_ref",
]
