"""
Tests for `domain/order.py` and `domain/payment.py`.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import draft_payload
from domain.order import (
    build_paid_order_payload,
    compute_draft_total,
    from_minor_units,
    shipping_total,
    to_minor_units,
)
from domain.payment import PaymentIntentRef, PaymentRail


def test_draft_total_includes_items_shipping_and_fees() -> None:
    draft = {
        "line_items": [
            {"product_id": 1, "quantity": 2, "price": "10.00"},
            {"product_id": 2, "quantity": 3, "total": "15.50"},
        ],
        "shipping_lines": [{"total": "5.90"}],
        "fee_lines": [{"name": "Points discount", "total": "-3.00"}],
    }

    assert compute_draft_total(draft) == Decimal("38.40")
    assert shipping_total(draft) == Decimal("5.90")


def test_invalid_amount_is_value_error() -> None:
    with pytest.raises(ValueError):
        compute_draft_total({"line_items": [{"product_id": 1, "quantity": 1, "price": "abc"}]})


def test_minor_unit_conversion() -> None:
    assert to_minor_units(Decimal("49.90")) == 4990
    assert to_minor_units(Decimal("0.005")) == 1
    assert from_minor_units(4990) == Decimal("49.90")


def test_paid_order_payload_carries_payment_reference() -> None:
    draft = draft_payload()

    payload = build_paid_order_payload(
        draft,
        rail=PaymentRail.PAYPAL,
        payment_reference="ORDER1",
        staging_id="paypal_1_abc",
        recovered=True,
    )
    meta = {entry["key"]: entry["value"] for entry in payload["meta_data"]}

    assert payload["set_paid"] is True
    assert payload["status"] == "processing"
    assert payload["payment_method"] == "paypal"
    assert payload["transaction_id"] == "ORDER1"
    assert meta["_paypal_order_id"] == "ORDER1"
    assert meta["_paypal_data_id"] == "paypal_1_abc"
    assert meta["_order_recovered"] == "yes"
    assert "fee_lines" not in payload
    assert "meta_data" not in draft


def test_payment_ref_metadata_accessors() -> None:
    ref = PaymentIntentRef(
        reference="pi_1",
        rail=PaymentRail.CARD,
        status="succeeded",
        captured=True,
        amount=Decimal("1.00"),
        currency="eur",
        metadata={"order_data_id": "stripe_1", "order_id": "not-a-number", "wc_order_id": "0"},
    )

    assert ref.staging_id == "stripe_1"
    assert ref.linked_order_id is None
    assert ref.pre_created_order_id is None
