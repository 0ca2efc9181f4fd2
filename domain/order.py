"""
Domain: order drafts and materialized orders.

Drafts use the backend-of-record's REST shape (WooCommerce v3): `line_items`,
`shipping_lines`, `fee_lines`, `billing`, `shipping`, `customer_id`,
`meta_data`. Monetary strings are parsed into `Decimal` and quantized to
cents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from .payment import PaymentRail

CENT = Decimal("0.01")

# Metadata keys written on materialized orders.
META_STRIPE_PAYMENT_INTENT = "_stripe_payment_intent_id"
META_STRIPE_DATA_ID = "_stripe_data_id"
META_STRIPE_SESSION = "_stripe_session_id"
META_PAYPAL_ORDER = "_paypal_order_id"
META_PAYPAL_DATA_ID = "_paypal_data_id"
META_PAYMENT_METHOD = "_payment_method"
META_POINTS_ASSIGNED = "_dreamshop_points_assigned"
META_ORDER_RECOVERED = "_order_recovered"


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, *, name: str = "amount") -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"{name} is not a valid amount: {value!r}") from e


def to_minor_units(amount: Decimal) -> int:
    """Decimal currency amount -> integer cents."""
    return int(quantize(amount) * 100)


def from_minor_units(cents: int) -> Decimal:
    return quantize(Decimal(cents) / 100)


def line_item_total(item: Mapping[str, Any]) -> Decimal:
    """Explicit `total` wins; otherwise `price * quantity`."""

    if item.get("total") not in (None, ""):
        return to_decimal(item["total"], name="line_items.total")
    if item.get("price") in (None, ""):
        raise ValueError(f"line item {item.get('product_id')!r} has neither total nor price")
    quantity = int(item.get("quantity") or 0)
    return to_decimal(item["price"], name="line_items.price") * quantity


def compute_draft_total(draft: Mapping[str, Any]) -> Decimal:
    """
    Total the buyer is charged for a draft.

    Sum of line items, shipping lines and fee lines (fee lines may be negative,
    e.g. a points discount).
    """

    total = Decimal("0")
    for item in draft.get("line_items") or []:
        total += line_item_total(item)
    for line in draft.get("shipping_lines") or []:
        total += to_decimal(line.get("total"), name="shipping_lines.total")
    for line in draft.get("fee_lines") or []:
        total += to_decimal(line.get("total"), name="fee_lines.total")
    return quantize(total)


def shipping_total(draft: Mapping[str, Any]) -> Decimal:
    return quantize(
        sum(
            (to_decimal(line.get("total")) for line in draft.get("shipping_lines") or []),
            Decimal("0"),
        )
    )


def payment_reference_meta_key(rail: PaymentRail) -> str:
    return META_PAYPAL_ORDER if rail is PaymentRail.PAYPAL else META_STRIPE_PAYMENT_INTENT


def staging_id_meta_key(rail: PaymentRail) -> str:
    return META_PAYPAL_DATA_ID if rail is PaymentRail.PAYPAL else META_STRIPE_DATA_ID


_PAYMENT_METHOD_TITLES: Dict[PaymentRail, tuple[str, str]] = {
    PaymentRail.CARD: ("stripe", "Credit Card (Stripe)"),
    PaymentRail.WALLET: ("stripe", "Apple Pay / Google Pay"),
    PaymentRail.REDIRECT: ("klarna", "Klarna"),
    PaymentRail.PAYPAL: ("paypal", "PayPal"),
}

# Redirect sessions record which wallet the buyer used.
_REDIRECT_METHOD_TITLES: Dict[str, tuple[str, str]] = {
    "klarna": ("klarna", "Klarna"),
    "satispay": ("satispay", "Satispay"),
}


def payment_method_title(rail: PaymentRail, method: Optional[str] = None) -> tuple[str, str]:
    if rail is PaymentRail.REDIRECT and method:
        return _REDIRECT_METHOD_TITLES.get(method.lower(), _PAYMENT_METHOD_TITLES[rail])
    return _PAYMENT_METHOD_TITLES[rail]


def build_paid_order_payload(
    draft: Mapping[str, Any],
    *,
    rail: PaymentRail,
    payment_reference: str,
    staging_id: str,
    recovered: bool = False,
    payment_method: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Turn a staged draft into the create-order request for a captured payment.

    The payment reference is written into the order metadata so the
    recent-orders scan can recognise the order later.
    """

    method, title = payment_method_title(rail, payment_method)
    meta: List[Dict[str, Any]] = list(draft.get("meta_data") or [])
    meta.extend(
        [
            {"key": payment_reference_meta_key(rail), "value": payment_reference},
            {"key": staging_id_meta_key(rail), "value": staging_id},
            {"key": META_PAYMENT_METHOD, "value": method},
            {"key": META_POINTS_ASSIGNED, "value": "yes"},
        ]
    )
    if recovered:
        meta.append({"key": META_ORDER_RECOVERED, "value": "yes"})

    payload: Dict[str, Any] = dict(draft)
    payload.update(
        {
            "customer_id": int(draft.get("customer_id") or 0),
            "payment_method": method,
            "payment_method_title": title,
            "set_paid": True,
            "status": "processing",
            "transaction_id": payment_reference,
            "meta_data": meta,
        }
    )
    if not payload.get("fee_lines"):
        payload.pop("fee_lines", None)
    return payload


@dataclass(frozen=True, slots=True)
class MaterializedOrder:
    """Authoritative order as reported by the backend-of-record."""

    order_id: int
    status: str
    total: Optional[Decimal] = None
    meta: Mapping[str, str] = field(default_factory=dict)

    def meta_value(self, key: str) -> Optional[str]:
        return self.meta.get(key)

    def carries_payment_reference(self, payment_reference: str) -> bool:
        return payment_reference in (
            self.meta.get(META_STRIPE_PAYMENT_INTENT),
            self.meta.get(META_PAYPAL_ORDER),
        )


__all__ = [
    "CENT",
    "MaterializedOrder",
    "build_paid_order_payload",
    "payment_method_title",
    "compute_draft_total",
    "from_minor_units",
    "line_item_total",
    "payment_reference_meta_key",
    "quantize",
    "shipping_total",
    "staging_id_meta_key",
    "to_decimal",
    "to_minor_units",
]
