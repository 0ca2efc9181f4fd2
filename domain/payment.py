"""
Domain: payment rails and provider payment references.

A `PaymentIntentRef` is a read-only view of an external payment object. Its
`captured` flag, as reported by the processor, is the only source of truth
for "has the buyer paid"; nothing the client asserts is trusted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional

# Metadata keys on provider payment objects.
STAGING_METADATA_KEY = "order_data_id"
ORDER_STAMP_METADATA_KEY = "order_id"
PRE_CREATED_ORDER_METADATA_KEY = "wc_order_id"
PAYMENT_METHOD_METADATA_KEY = "payment_method"


class PaymentRail(str, Enum):
    CARD = "card"  # direct PaymentIntent
    WALLET = "wallet"  # Apple/Google Pay, order created before the charge
    REDIRECT = "redirect"  # Checkout Session (Klarna, Satispay)
    PAYPAL = "paypal"

    @property
    def staging_prefix(self) -> str:
        return {
            PaymentRail.CARD: "stripe",
            PaymentRail.WALLET: "wallet",
            PaymentRail.REDIRECT: "klarna",
            PaymentRail.PAYPAL: "paypal",
        }[self]


@dataclass(frozen=True, slots=True)
class PaymentIntentRef:
    reference: str
    rail: PaymentRail
    status: str
    captured: bool
    amount: Decimal
    currency: str
    metadata: Mapping[str, str] = field(default_factory=dict)
    failed: bool = False

    @property
    def staging_id(self) -> Optional[str]:
        return self.metadata.get(STAGING_METADATA_KEY) or None

    @property
    def linked_order_id(self) -> Optional[int]:
        return _as_order_id(self.metadata.get(ORDER_STAMP_METADATA_KEY))

    @property
    def pre_created_order_id(self) -> Optional[int]:
        return _as_order_id(self.metadata.get(PRE_CREATED_ORDER_METADATA_KEY))

    @property
    def payment_method(self) -> Optional[str]:
        return self.metadata.get(PAYMENT_METHOD_METADATA_KEY) or None


def _as_order_id(value: Optional[str]) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        order_id = int(value)
    except (TypeError, ValueError):
        return None
    return order_id if order_id > 0 else None


__all__ = [
    "ORDER_STAMP_METADATA_KEY",
    "PAYMENT_METHOD_METADATA_KEY",
    "PRE_CREATED_ORDER_METADATA_KEY",
    "STAGING_METADATA_KEY",
    "PaymentIntentRef",
    "PaymentRail",
]
