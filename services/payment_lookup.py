"""
Resolve a (rail, reference) pair to fresh processor state.

Redirect-rail callers usually only know the Checkout Session id (`cs_...`);
it is resolved to the PaymentIntent behind it, which is what orders and
stamps are keyed by.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from domain.errors import ValidationError
from domain.payment import STAGING_METADATA_KEY, PaymentRail
from services.gateway import PaymentGateway
from services.paypal_gateway import PayPalGateway
from services.stripe_gateway import StripeGateway

CHECKOUT_SESSION_PREFIX = "cs_"


@dataclass(frozen=True, slots=True)
class PaymentLookup:
    stripe: StripeGateway
    paypal: PayPalGateway

    def gateway_for(self, rail: PaymentRail) -> PaymentGateway:
        return self.paypal if rail is PaymentRail.PAYPAL else self.stripe

    def resolve_reference(self, rail: PaymentRail, reference: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Return `(payment_reference, staging_id)`.

        The payment reference is None while a Checkout Session has no
        PaymentIntent yet.
        """

        if not reference:
            raise ValidationError("Payment reference is required")
        if rail is PaymentRail.REDIRECT and reference.startswith(CHECKOUT_SESSION_PREFIX):
            session = self.stripe.retrieve_checkout_session(reference)
            return session.payment_intent_id, session.metadata.get(STAGING_METADATA_KEY)
        return reference, None


__all__ = ["CHECKOUT_SESSION_PREFIX", "PaymentLookup"]
