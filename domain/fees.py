"""
Domain: processing fee schedules and amount reconciliation (pure).

Some flows receive a total that already embeds a processing fee computed by
the payment network's client SDK:

    total = (subtotal + shipping) * multiplier + fixed

The product subtotal is recovered by inverting that formula so that the
materialized order's lines sum to the charged total to the cent.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping

from .order import CENT, line_item_total, quantize


@dataclass(frozen=True, slots=True)
class FeeSchedule:
    multiplier: Decimal
    fixed: Decimal
    label: str

    def __post_init__(self) -> None:
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.fixed < 0:
            raise ValueError("fixed fee must be >= 0")

    def charged_total(self, subtotal: Decimal, shipping: Decimal) -> Decimal:
        return quantize((subtotal + shipping) * self.multiplier + self.fixed)


PAYPAL_EXPRESS_FEES = FeeSchedule(
    multiplier=Decimal("1.035"),
    fixed=Decimal("0.35"),
    label="PayPal fee (3.5% + €0.35)",
)


@dataclass(frozen=True, slots=True)
class FeeBreakdown:
    subtotal: Decimal
    shipping: Decimal
    fee: Decimal

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.shipping + self.fee


def derive_product_subtotal(
    total: Decimal,
    shipping: Decimal,
    schedule: FeeSchedule,
) -> FeeBreakdown:
    """
    Invert the fee formula.

    Guarantees:
    - `schedule.charged_total(subtotal, shipping)` is within one cent of `total`
    - `subtotal + shipping + fee == total` exactly

    Raises:
        ValueError: if the total cannot cover shipping plus the fixed fee
    """

    total = quantize(total)
    shipping = quantize(shipping)
    estimate = quantize((total - schedule.fixed) / schedule.multiplier - shipping)
    if estimate <= 0:
        raise ValueError(
            f"Charged total {total} does not cover shipping {shipping} and fees"
        )

    # Rounding the division can leave the recomputed charge a cent away; nudge
    # toward the candidate whose recomputed charge is closest.
    candidates = [estimate - CENT, estimate, estimate + CENT]
    subtotal = min(
        (c for c in candidates if c > 0),
        key=lambda c: (abs(schedule.charged_total(c, shipping) - total), abs(c - estimate)),
    )
    fee = total - subtotal - shipping
    return FeeBreakdown(subtotal=subtotal, shipping=shipping, fee=fee)


def apply_fee_breakdown(
    draft: Mapping[str, Any],
    breakdown: FeeBreakdown,
    schedule: FeeSchedule,
) -> Dict[str, Any]:
    """
    Return a copy of `draft` whose line items sum to `breakdown.subtotal` and
    which carries a fee line for `breakdown.fee`.

    The subtotal is spread over line items in proportion to their current
    totals (or quantities when no prices are known); the last item absorbs the
    rounding remainder.
    """

    result: Dict[str, Any] = copy.deepcopy(dict(draft))
    items: List[Dict[str, Any]] = result.get("line_items") or []
    if not items:
        raise ValueError("draft has no line items")

    try:
        weights = [line_item_total(item) for item in items]
    except ValueError:
        weights = []
    if not weights or sum(weights) <= 0:
        weights = [Decimal(int(item.get("quantity") or 1)) for item in items]
    weight_sum = sum(weights)

    allocated = Decimal("0")
    for index, item in enumerate(items):
        if index == len(items) - 1:
            share = breakdown.subtotal - allocated
        else:
            share = quantize(breakdown.subtotal * weights[index] / weight_sum)
            allocated += share
        item["subtotal"] = f"{share:.2f}"
        item["total"] = f"{share:.2f}"

    fee_lines = list(result.get("fee_lines") or [])
    fee_lines.append({"name": schedule.label, "total": f"{breakdown.fee:.2f}", "tax_status": "none"})
    result["fee_lines"] = fee_lines
    return result


__all__ = [
    "PAYPAL_EXPRESS_FEES",
    "FeeBreakdown",
    "FeeSchedule",
    "apply_fee_breakdown",
    "derive_product_subtotal",
]
