"""
Tests for the provider adapters: `services/paypal_gateway.py`,
`services/stripe_gateway.py` and `repositories/order_repository.py`.

HTTP adapters run against httpx.MockTransport; the Stripe SDK is patched.
"""

from __future__ import annotations

import json
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import stripe

from domain.errors import PaymentProviderError
from domain.payment import PaymentRail
from repositories.order_repository import OrderBackendError, WooCommerceOrderRepository
from services.paypal_gateway import PayPalGateway, paypal_order_to_ref
from services.stripe_gateway import StripeGateway, WebhookSignatureError, payment_intent_to_ref


def _paypal(handler) -> PayPalGateway:
    client = httpx.Client(base_url="https://api-m.sandbox.paypal.com", transport=httpx.MockTransport(handler))
    return PayPalGateway("client-id", "client-secret", client)


def _completed_order(order_id: str = "5O190127TN364715T") -> dict:
    return {
        "id": order_id,
        "status": "COMPLETED",
        "purchase_units": [
            {
                "custom_id": "paypal_1_abc",
                "amount": {"currency_code": "EUR", "value": "49.90"},
                "payments": {"captures": [{"amount": {"currency_code": "EUR", "value": "49.90"}}]},
            }
        ],
    }


def test_paypal_order_to_ref_reads_capture_and_custom_id() -> None:
    ref = paypal_order_to_ref(_completed_order())

    assert ref.rail is PaymentRail.PAYPAL
    assert ref.captured is True
    assert ref.amount == Decimal("49.90")
    assert ref.currency == "eur"
    assert ref.staging_id == "paypal_1_abc"
    assert ref.linked_order_id is None


def test_paypal_token_is_cached_between_calls() -> None:
    token_requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            token_requests.append(request)
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(200, json=_completed_order())

    gateway = _paypal(handler)
    gateway.retrieve("5O190127TN364715T")
    gateway.retrieve("5O190127TN364715T")

    assert len(token_requests) == 1


def test_paypal_create_order_carries_staging_id() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        bodies.append(json.loads(request.content))
        return httpx.Response(
            201,
            json={
                "id": "ORDER1",
                "status": "CREATED",
                "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER1"}],
            },
        )

    created = _paypal(handler).create_order(
        amount=Decimal("52.00"),
        currency="eur",
        staging_id="paypal_1_abc",
        return_url="https://shop.example.com/return",
        cancel_url="https://shop.example.com/cancel",
    )

    assert created.paypal_order_id == "ORDER1"
    assert created.approve_url.endswith("ORDER1")
    unit = bodies[0]["purchase_units"][0]
    assert unit["custom_id"] == "paypal_1_abc"
    assert unit["amount"] == {"currency_code": "EUR", "value": "52.00"}


def test_paypal_already_captured_falls_back_to_retrieve() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if request.url.path.endswith("/capture"):
            return httpx.Response(422, json={"details": [{"issue": "ORDER_ALREADY_CAPTURED"}]})
        return httpx.Response(200, json=_completed_order())

    ref = _paypal(handler).capture("5O190127TN364715T")

    assert ref.captured is True


def test_paypal_auth_failure_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_client"})

    with pytest.raises(PaymentProviderError):
        _paypal(handler).retrieve("X")


def test_payment_intent_to_ref_maps_stripe_object() -> None:
    intent = SimpleNamespace(
        id="pi_1",
        status="succeeded",
        amount=4990,
        amount_received=4990,
        currency="eur",
        metadata={"order_data_id": "klarna_1_abc", "rail": "redirect", "order_id": "1001"},
    )

    ref = payment_intent_to_ref(intent)

    assert ref.captured is True
    assert ref.amount == Decimal("49.90")
    assert ref.rail is PaymentRail.REDIRECT
    assert ref.staging_id == "klarna_1_abc"
    assert ref.linked_order_id == 1001


def test_payment_intent_with_pre_created_order_is_wallet() -> None:
    intent = SimpleNamespace(id="pi_2", status="canceled", amount=100, currency="eur", metadata={"wc_order_id": "55"})

    ref = payment_intent_to_ref(intent)

    assert ref.rail is PaymentRail.WALLET
    assert ref.pre_created_order_id == 55
    assert ref.failed is True
    assert ref.captured is False


def test_stripe_gateway_stamp_updates_metadata(monkeypatch) -> None:
    calls = []

    def fake_modify(payment_intent_id, **kwargs):
        calls.append((payment_intent_id, kwargs))

    monkeypatch.setattr(stripe.PaymentIntent, "modify", fake_modify)
    gateway = StripeGateway("sk_test_123")
    ref = payment_intent_to_ref(
        SimpleNamespace(id="pi_1", status="succeeded", amount=100, amount_received=100, currency="eur", metadata={})
    )

    gateway.stamp_order(ref, 1001)

    assert calls == [("pi_1", {"api_key": "sk_test_123", "metadata": {"order_id": "1001"}})]


def test_stripe_gateway_create_payment_intent_sends_minor_units(monkeypatch) -> None:
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(id="pi_9", client_secret="pi_9_secret", status="requires_payment_method")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    created = StripeGateway("sk_test_123").create_payment_intent(
        amount=Decimal("49.90"),
        currency="eur",
        metadata={"order_data_id": "stripe_1_abc"},
        idempotency_key="pi-stripe_1_abc",
    )

    assert created.payment_intent_id == "pi_9"
    assert captured["amount"] == 4990
    assert captured["metadata"] == {"order_data_id": "stripe_1_abc"}
    assert captured["idempotency_key"] == "pi-stripe_1_abc"


def test_stripe_gateway_requires_api_key() -> None:
    with pytest.raises(RuntimeError):
        StripeGateway("")


def test_construct_event_without_secret_is_rejected() -> None:
    with pytest.raises(WebhookSignatureError):
        StripeGateway("sk_test_123").construct_event(b"{}", "t=1,v1=abc")


def _woo(handler) -> WooCommerceOrderRepository:
    client = httpx.Client(
        base_url="https://shop.example.com/wp-json/wc/v3/",
        transport=httpx.MockTransport(handler),
    )
    return WooCommerceOrderRepository(client)


def test_woocommerce_create_and_list_orders() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(201, json={"id": 1001, "status": body["status"], "total": "49.90", "meta_data": body["meta_data"]})
        assert request.url.params["orderby"] == "date"
        return httpx.Response(
            200,
            json=[{"id": 1001, "status": "processing", "meta_data": [{"key": "_paypal_order_id", "value": "ORDER1"}]}],
        )

    repo = _woo(handler)
    order = repo.create_order({"status": "processing", "meta_data": [{"key": "_stripe_payment_intent_id", "value": "pi_1"}]})
    recent = repo.list_recent_orders(limit=10)

    assert order.order_id == 1001
    assert order.total == Decimal("49.90")
    assert order.carries_payment_reference("pi_1")
    assert recent[0].carries_payment_reference("ORDER1")


def test_woocommerce_missing_order_is_none_and_errors_raise() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(404, json={"code": "woocommerce_rest_shop_order_invalid_id"})
        return httpx.Response(500, text="internal error")

    repo = _woo(handler)

    assert repo.get_order(999) is None
    with pytest.raises(OrderBackendError) as excinfo:
        repo.create_order({"status": "processing"})
    assert excinfo.value.status_code == 500
