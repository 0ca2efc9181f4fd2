"""
Domain: deposit / installment eligibility (pure).

Rule:
- A draft carrying any deposit/installment line item may only be placed by an
  authenticated buyer (non-zero identity). Context never relaxes the rule.

Evaluated before any staging write or processor call.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Union

DEPOSIT_ERROR_CODE: str = "DEPOSIT_REQUIRES_AUTHENTICATION"

# Line item meta keys the deposits plugin reads to convert an item to a deposit.
DEPOSIT_META_KEYS: frozenset[str] = frozenset({"_wc_convert_to_deposit", "_wc_deposit_option"})

# Keys naming a payment plan; any non-empty value marks an installment item.
PAYMENT_PLAN_KEYS: frozenset[str] = frozenset({"_wc_payment_plan", "payment_plan", "_deposit_payment_plan"})

ORDER_DEPOSIT_META_KEY: str = "_wc_deposits_order_has_deposit"

BuyerIdentity = Union[int, str, None]


@dataclass(frozen=True, slots=True)
class DepositEligibilityDecision:
    is_valid: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None


def is_anonymous(buyer_identity: BuyerIdentity) -> bool:
    if buyer_identity is None:
        return True
    if isinstance(buyer_identity, str):
        text = buyer_identity.strip()
        if not text:
            return True
        try:
            return int(text) == 0
        except ValueError:
            return False
    return int(buyer_identity) == 0


def _is_yes(value: Any) -> bool:
    return str(value if value is not None else "").strip().lower() == "yes"


def _has_plan(value: Any) -> bool:
    return value not in (None, "", 0, "0")


def _positive_amount(value: Any) -> bool:
    try:
        return Decimal(str(value)) > 0
    except (InvalidOperation, ValueError):
        return False


def line_item_has_deposit(item: Mapping[str, Any]) -> bool:
    if _is_yes(item.get("_wc_convert_to_deposit")):
        return True
    if any(_has_plan(item.get(key)) for key in PAYMENT_PLAN_KEYS):
        return True
    if _positive_amount(item.get("deposit_amount")):
        return True
    for meta in item.get("meta_data") or []:
        key = meta.get("key")
        if key in DEPOSIT_META_KEYS and _is_yes(meta.get("value")):
            return True
        if key in PAYMENT_PLAN_KEYS and _has_plan(meta.get("value")):
            return True
    return False


def has_installment_line_items(line_items: Iterable[Mapping[str, Any]]) -> bool:
    return any(line_item_has_deposit(item) for item in line_items)


def draft_has_installments(draft: Mapping[str, Any]) -> bool:
    """True if any line item, or the order itself, is flagged as a deposit."""
    if has_installment_line_items(draft.get("line_items") or []):
        return True
    return any(
        meta.get("key") == ORDER_DEPOSIT_META_KEY and _is_yes(meta.get("value"))
        for meta in draft.get("meta_data") or []
    )


def validate_deposit_eligibility(
    buyer_identity: BuyerIdentity,
    has_installment_items: bool,
    context_label: str,
) -> DepositEligibilityDecision:
    """
    Decide whether a draft may proceed to payment.

    Args:
        buyer_identity: Authenticated customer id (0/None/"" for guests)
        has_installment_items: True if any line item is a deposit/installment
        context_label: Which checkout is asking (only used in the message)

    Returns:
        DepositEligibilityDecision (never raises)
    """

    if has_installment_items and is_anonymous(buyer_identity):
        return DepositEligibilityDecision(
            is_valid=False,
            error_code=DEPOSIT_ERROR_CODE,
            error_message=(
                f"Deposit and installment purchases require a signed-in account ({context_label})."
            ),
        )
    return DepositEligibilityDecision(is_valid=True)


__all__ = [
    "DEPOSIT_ERROR_CODE",
    "DEPOSIT_META_KEYS",
    "DepositEligibilityDecision",
    "ORDER_DEPOSIT_META_KEY",
    "PAYMENT_PLAN_KEYS",
    "draft_has_installments",
    "has_installment_line_items",
    "is_anonymous",
    "line_item_has_deposit",
    "validate_deposit_eligibility",
]
