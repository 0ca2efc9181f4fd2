"""
Tests for `services/webhook_service.py`.

Covers contract rules:
- payment_intent.succeeded materializes exactly once, however often it is delivered.
- checkout.session.completed only materializes a paid session.
- Processing failures are acknowledged, not raised; bad signatures are raised.
- Webhook, fallback and recovery interleaved still yield one order.
"""

from __future__ import annotations

import json
from decimal import Decimal

import pytest

from conftest import VALID_SIGNATURE, draft_payload, stage_draft
from domain.payment import PaymentRail
from services.initiation_service import CheckoutDraft
from services.stripe_gateway import WebhookSignatureError


def _event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _payload(event: dict) -> bytes:
    return json.dumps(event).encode()


def _card_payment(stripe_gateway, staging, staging_id: str = "abc") -> str:
    stage_draft(staging, staging_id)
    intent_id = stripe_gateway.add_intent(Decimal("49.90"), {"order_data_id": staging_id, "rail": "card"})
    staging.set_payment_intent_id(staging_id, intent_id)
    stripe_gateway.succeed(intent_id)
    return intent_id


def test_scenario_a_webhook_then_recover(webhooks, recovery, stripe_gateway, staging, orders) -> None:
    intent_id = _card_payment(stripe_gateway, staging)

    ack = webhooks.handle(
        _payload(_event("payment_intent.succeeded", {"id": intent_id})),
        VALID_SIGNATURE,
    )

    assert ack.handled is True
    assert orders.created_count == 1
    order_id = ack.outcome.order_id
    assert orders.get_order(order_id).total == Decimal("49.90")
    assert staging.get("abc").is_completed

    recovered = recovery.recover("abc", intent_id, PaymentRail.CARD)
    assert recovered.order_id == order_id
    assert recovered.already_exists is True
    assert orders.created_count == 1


def test_scenario_c_duplicate_delivery_observes_stamp(webhooks, stripe_gateway, staging, orders) -> None:
    intent_id = _card_payment(stripe_gateway, staging)
    event = _event("payment_intent.succeeded", {"id": intent_id})

    first = webhooks.dispatch(event)
    second = webhooks.dispatch({**event, "id": "evt_retry"})

    assert orders.created_count == 1
    assert second.outcome.order_id == first.outcome.order_id
    assert second.outcome.already_exists is True
    assert stripe_gateway.stamps == [(intent_id, first.outcome.order_id)]


def test_interleaved_paths_yield_one_order(webhooks, completion, recovery, stripe_gateway, staging, orders) -> None:
    intent_id = _card_payment(stripe_gateway, staging)
    event = _event("payment_intent.succeeded", {"id": intent_id})

    results = [
        completion.finalize(intent_id, PaymentRail.CARD).order_id,
        webhooks.dispatch(event).outcome.order_id,
        recovery.recover("abc", intent_id, PaymentRail.CARD).order_id,
        webhooks.dispatch(event).outcome.order_id,
        completion.status(intent_id, PaymentRail.CARD).order_id,
    ]

    assert orders.created_count == 1
    assert len(set(results)) == 1


def test_invalid_signature_is_raised(webhooks) -> None:
    with pytest.raises(WebhookSignatureError):
        webhooks.handle(b"{}", "t=1,v1=forged")
    with pytest.raises(WebhookSignatureError):
        webhooks.handle(b"{}", None)


def test_unpaid_checkout_session_is_ignored(webhooks, stripe_gateway, initiation, orders) -> None:
    started = initiation.initiate_redirect(CheckoutDraft(order_payload=draft_payload()), method="satispay")
    session = {"id": started.session_id, "payment_status": "unpaid", "metadata": {"order_data_id": started.staging_id}}

    ack = webhooks.dispatch(_event("checkout.session.completed", session))

    assert ack.handled is False
    assert orders.created_count == 0


def test_paid_checkout_session_materializes(webhooks, stripe_gateway, initiation, staging, orders) -> None:
    started = initiation.initiate_redirect(CheckoutDraft(order_payload=draft_payload()), method="klarna")
    intent_id = stripe_gateway.pay_session(started.session_id)
    session = {
        "id": started.session_id,
        "payment_status": "paid",
        "payment_intent": intent_id,
        "metadata": {"order_data_id": started.staging_id},
    }

    ack = webhooks.dispatch(_event("checkout.session.completed", session))
    replay = webhooks.dispatch(_event("checkout.session.async_payment_succeeded", session, "evt_2"))

    assert ack.handled is True
    assert replay.outcome.already_exists is True
    assert orders.created_count == 1
    assert staging.get(started.staging_id).final_order_id == ack.outcome.order_id
    assert orders.rows[ack.outcome.order_id]["payment_method"] == "klarna"


def test_missing_draft_is_acknowledged_without_order(webhooks, stripe_gateway, orders) -> None:
    intent_id = stripe_gateway.add_intent(Decimal("49.90"), {"order_data_id": "gone"}, status="succeeded")

    ack = webhooks.dispatch(_event("payment_intent.succeeded", {"id": intent_id}))

    assert ack.handled is False
    assert ack.error == "STAGING_EXPIRED_OR_MISSING"
    assert orders.created_count == 0


def test_backend_failure_is_acknowledged_and_retry_succeeds(webhooks, stripe_gateway, staging, orders) -> None:
    intent_id = _card_payment(stripe_gateway, staging)
    event = _event("payment_intent.succeeded", {"id": intent_id})
    orders.fail_create = True

    failed = webhooks.dispatch(event)
    assert failed.handled is False
    assert failed.error == "ORDER_CREATION_FAILED"

    orders.fail_create = False
    retried = webhooks.dispatch(event)
    assert retried.handled is True
    assert orders.created_count == 1


def test_unrelated_events_are_ignored(webhooks, orders) -> None:
    ack = webhooks.dispatch(_event("customer.created", {"id": "cus_1"}))

    assert ack.handled is False
    assert ack.error is None
    assert orders.created_count == 0


def test_canceled_payment_is_abandoned_without_order(webhooks, stripe_gateway, staging, orders) -> None:
    stage_draft(staging, "abc")
    intent_id = stripe_gateway.add_intent(Decimal("49.90"), {"order_data_id": "abc", "rail": "card"}, status="canceled")

    ack = webhooks.dispatch(_event("payment_intent.canceled", {"id": intent_id}))

    assert ack.handled is True
    assert ack.outcome.lifecycle.value == "abandoned"
    assert ack.outcome.order_id is None
    assert orders.created_count == 0
    assert staging.get("abc") is not None


def test_canceled_wallet_payment_cancels_pre_created_order(webhooks, stripe_gateway, orders) -> None:
    order = orders.create_order({**draft_payload(), "status": "pending", "set_paid": False})
    intent_id = stripe_gateway.add_intent(Decimal("49.90"), {"wc_order_id": str(order.order_id)}, status="canceled")

    ack = webhooks.dispatch(_event("payment_intent.canceled", {"id": intent_id}))

    assert ack.handled is True
    assert orders.rows[order.order_id]["status"] == "cancelled"


def test_cancel_event_for_captured_payment_is_refused(webhooks, stripe_gateway, staging, orders) -> None:
    intent_id = _card_payment(stripe_gateway, staging)

    ack = webhooks.dispatch(_event("payment_intent.canceled", {"id": intent_id}))

    assert ack.handled is False
    assert ack.error == "PAYMENT_NOT_CAPTURED"
    assert orders.created_count == 0
