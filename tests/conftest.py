"""
Pytest configuration and shared fakes.

Adds the project root to the Python path so tests can import domain,
repositories, services and api, and provides in-memory stand-ins for Stripe,
PayPal, the WooCommerce backend and the loyalty ledger.
"""

import json
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Mapping, Optional

import pytest

# Add the project directory to the Python path
# so tests can import domain, repositories, etc.
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from domain.errors import PaymentProviderError  # noqa: E402
from domain.order import compute_draft_total, to_minor_units  # noqa: E402
from domain.payment import ORDER_STAMP_METADATA_KEY, PaymentIntentRef  # noqa: E402
from domain.staged_order import StagedOrderRecord  # noqa: E402
from repositories.order_repository import OrderBackendError, _row_to_order  # noqa: E402
from repositories.staging_repository import InMemoryStagingStore  # noqa: E402
from services.completion_service import PaymentCompletionService  # noqa: E402
from services.gateway import PaymentGateway  # noqa: E402
from services.initiation_service import PaymentInitiationService  # noqa: E402
from services.loyalty_service import DeductionResult, LoyaltyLedgerError, PointsRedemptionOutbox  # noqa: E402
from services.payment_lookup import PaymentLookup  # noqa: E402
from services.paypal_gateway import CreatedPayPalOrder, paypal_order_to_ref  # noqa: E402
from services.reconciliation_service import OrderReconciler  # noqa: E402
from services.recovery_service import OrderRecoveryService  # noqa: E402
from services.stripe_gateway import (  # noqa: E402
    CheckoutSessionRef,
    CreatedPaymentIntent,
    WebhookSignatureError,
    payment_intent_to_ref,
)
from services.webhook_service import StripeWebhookService  # noqa: E402

VALID_SIGNATURE = "t=1,v1=valid"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: Any) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeStripeGateway(PaymentGateway):
    """PaymentIntents and Checkout Sessions kept in dicts, shaped like Stripe objects."""

    def __init__(self) -> None:
        self.intents: Dict[str, SimpleNamespace] = {}
        self.sessions: Dict[str, SimpleNamespace] = {}
        self.created: List[Dict[str, Any]] = []
        self.stamps: List[tuple[str, int]] = []
        self.fail_next_create = False
        self.confirm_status = "requires_action"
        self._ids = count(1)

    # test helpers

    def add_intent(
        self,
        amount: Decimal,
        metadata: Mapping[str, str],
        *,
        status: str = "requires_payment_method",
        intent_id: Optional[str] = None,
    ) -> str:
        intent_id = intent_id or f"pi_test_{next(self._ids)}"
        self.intents[intent_id] = SimpleNamespace(
            id=intent_id,
            status=status,
            amount=to_minor_units(amount),
            amount_received=to_minor_units(amount) if status == "succeeded" else 0,
            currency="eur",
            metadata=dict(metadata),
            client_secret=f"{intent_id}_secret",
        )
        return intent_id

    def succeed(self, intent_id: str) -> None:
        intent = self.intents[intent_id]
        intent.status = "succeeded"
        intent.amount_received = intent.amount

    def pay_session(self, session_id: str) -> str:
        session = self.sessions[session_id]
        intent_id = self.add_intent(
            Decimal(session.amount_total) / 100,
            session.metadata,
            status="succeeded",
        )
        session.payment_status = "paid"
        session.payment_intent = intent_id
        return intent_id

    # PaymentIntents

    def create_payment_intent(self, *, amount: Decimal, currency: str, metadata: Mapping[str, str], **kwargs: Any) -> CreatedPaymentIntent:
        self.created.append({"amount": amount, "currency": currency, "metadata": dict(metadata), **kwargs})
        if self.fail_next_create:
            self.fail_next_create = False
            raise PaymentProviderError("Stripe PaymentIntent creation failed: card declined")
        status = self.confirm_status if kwargs.get("confirm") else "requires_payment_method"
        intent_id = self.add_intent(amount, metadata, status=status)
        return CreatedPaymentIntent(
            payment_intent_id=intent_id,
            client_secret=self.intents[intent_id].client_secret,
            status=status,
        )

    def retrieve(self, reference: str) -> PaymentIntentRef:
        if reference not in self.intents:
            raise PaymentProviderError(f"Stripe PaymentIntent {reference} could not be retrieved: no such intent")
        return payment_intent_to_ref(self.intents[reference])

    def update_metadata(self, payment_intent_id: str, metadata: Mapping[str, str]) -> None:
        self.intents[payment_intent_id].metadata.update(metadata)

    def stamp_order(self, payment: PaymentIntentRef, order_id: int) -> None:
        self.stamps.append((payment.reference, order_id))
        self.update_metadata(payment.reference, {ORDER_STAMP_METADATA_KEY: str(order_id)})

    # Checkout Sessions

    def create_checkout_session(self, *, amount: Decimal, currency: str, metadata: Mapping[str, str], **kwargs: Any) -> CheckoutSessionRef:
        self.created.append({"amount": amount, "currency": currency, "metadata": dict(metadata), **kwargs})
        if self.fail_next_create:
            self.fail_next_create = False
            raise PaymentProviderError("Stripe Checkout Session creation failed")
        session_id = f"cs_test_{next(self._ids)}"
        self.sessions[session_id] = SimpleNamespace(
            id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            payment_status="unpaid",
            payment_intent=None,
            amount_total=to_minor_units(amount),
            metadata=dict(metadata),
        )
        return self.retrieve_checkout_session(session_id)

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionRef:
        session = self.sessions[session_id]
        return CheckoutSessionRef(
            session_id=session.id,
            url=session.url,
            payment_status=session.payment_status,
            payment_intent_id=session.payment_intent,
            amount_total=Decimal(session.amount_total) / 100,
            metadata=dict(session.metadata),
        )

    # Webhooks

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("No signatures found matching the expected signature for payload")
        return json.loads(payload)


class FakePayPalGateway(PaymentGateway):
    def __init__(self) -> None:
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.fail_next_create = False
        self._ids = count(1)

    def create_order(self, *, amount: Decimal, currency: str, staging_id: str, return_url: str, cancel_url: str) -> CreatedPayPalOrder:
        if self.fail_next_create:
            self.fail_next_create = False
            raise PaymentProviderError("PayPal order creation failed with 500")
        order_id = f"PAYPAL{next(self._ids):06d}"
        self.orders[order_id] = {
            "id": order_id,
            "status": "APPROVED",
            "purchase_units": [
                {
                    "custom_id": staging_id,
                    "amount": {"currency_code": currency.upper(), "value": f"{amount:.2f}"},
                }
            ],
        }
        return CreatedPayPalOrder(
            paypal_order_id=order_id,
            status="CREATED",
            approve_url=f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}",
        )

    def capture(self, paypal_order_id: str) -> PaymentIntentRef:
        order = self.orders[paypal_order_id]
        unit = order["purchase_units"][0]
        order["status"] = "COMPLETED"
        unit["payments"] = {
            "captures": [{"id": f"CAP-{paypal_order_id}", "custom_id": unit["custom_id"], "amount": unit["amount"]}]
        }
        return paypal_order_to_ref(order)

    def retrieve(self, reference: str) -> PaymentIntentRef:
        return paypal_order_to_ref(self.orders[reference])

    def stamp_order(self, payment: PaymentIntentRef, order_id: int) -> None:
        pass


class FakeOrderRepository:
    """WooCommerce orders held as REST documents."""

    def __init__(self) -> None:
        self.rows: Dict[int, Dict[str, Any]] = {}
        self.notes: Dict[int, List[str]] = {}
        self.fail_create = False
        self.fail_list = False
        self._ids = count(1001)

    @property
    def created_count(self) -> int:
        return len(self.rows)

    def create_order(self, payload: Mapping[str, Any]):
        if self.fail_create:
            raise OrderBackendError("POST orders failed with 500: internal error", status_code=500)
        order_id = next(self._ids)
        row = dict(payload)
        row["id"] = order_id
        row.setdefault("status", "pending")
        if row.get("line_items"):
            row["total"] = f"{compute_draft_total(row):.2f}"
        self.rows[order_id] = row
        return _row_to_order(row)

    def get_order(self, order_id: int):
        row = self.rows.get(order_id)
        return _row_to_order(row) if row else None

    def update_order(self, order_id: int, patch: Mapping[str, Any]):
        row = self.rows[order_id]
        for key, value in patch.items():
            if key == "meta_data":
                row["meta_data"] = list(row.get("meta_data") or []) + list(value)
            else:
                row[key] = value
        return _row_to_order(row)

    def list_recent_orders(self, *, limit: int = 50):
        if self.fail_list:
            raise OrderBackendError("GET orders failed: timeout")
        newest = sorted(self.rows, reverse=True)[:limit]
        return [_row_to_order(self.rows[order_id]) for order_id in newest]

    def add_order_note(self, order_id: int, note: str) -> None:
        self.notes.setdefault(order_id, []).append(note)


class FakeLedger:
    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.calls: List[tuple[int, int, int]] = []
        self.balance = 1000

    def deduct_points(self, user_id: int, points: int, order_id: int, description: str = "") -> DeductionResult:
        self.calls.append((user_id, points, order_id))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise LoyaltyLedgerError("Loyalty ledger unreachable: connection refused")
        self.balance -= points
        return DeductionResult(success=True, new_balance=self.balance)


def draft_payload(
    *,
    price: str = "39.90",
    shipping: str = "10.00",
    customer_id: int = 42,
    deposit: bool = False,
) -> Dict[str, Any]:
    item: Dict[str, Any] = {"product_id": 1234, "quantity": 1, "price": price}
    if deposit:
        item["meta_data"] = [{"key": "_wc_convert_to_deposit", "value": "yes"}]
    return {
        "customer_id": customer_id,
        "line_items": [item],
        "shipping_lines": [{"method_id": "flat_rate", "method_title": "Courier", "total": shipping}],
        "billing": {"first_name": "Mario", "last_name": "Rossi", "email": "mario@example.com"},
    }


def stage_draft(
    staging: InMemoryStagingStore,
    staging_id: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    points_to_redeem: int = 0,
) -> StagedOrderRecord:
    record = StagedOrderRecord(
        staging_id=staging_id,
        order_payload=payload or draft_payload(),
        created_at=staging.now(),
        points_to_redeem=points_to_redeem,
    )
    assert staging.set(staging_id, record)
    return record


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def staging(clock: FakeClock) -> InMemoryStagingStore:
    return InMemoryStagingStore(clock=clock)


@pytest.fixture
def stripe_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def paypal_gateway() -> FakePayPalGateway:
    return FakePayPalGateway()


@pytest.fixture
def orders() -> FakeOrderRepository:
    return FakeOrderRepository()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def outbox(ledger: FakeLedger) -> PointsRedemptionOutbox:
    return PointsRedemptionOutbox(ledger)


@pytest.fixture
def reconciler(staging, orders, outbox) -> OrderReconciler:
    return OrderReconciler(staging, orders, outbox)


@pytest.fixture
def lookup(stripe_gateway, paypal_gateway) -> PaymentLookup:
    return PaymentLookup(stripe=stripe_gateway, paypal=paypal_gateway)


@pytest.fixture
def initiation(staging, stripe_gateway, paypal_gateway, orders, reconciler) -> PaymentInitiationService:
    return PaymentInitiationService(
        staging,
        stripe_gateway,
        paypal_gateway,
        orders,
        reconciler,
        currency="eur",
        frontend_url="https://shop.example.com",
    )


@pytest.fixture
def webhooks(stripe_gateway, reconciler) -> StripeWebhookService:
    return StripeWebhookService(stripe_gateway, reconciler)


@pytest.fixture
def completion(lookup, reconciler, orders) -> PaymentCompletionService:
    return PaymentCompletionService(lookup, reconciler, orders)


@pytest.fixture
def recovery(lookup, reconciler) -> OrderRecoveryService:
    return OrderRecoveryService(lookup, reconciler)
