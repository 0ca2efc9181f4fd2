"""
Payment initiation service.

Every rail follows the same order of operations:
1. Validate the draft and run the deposit eligibility check (no side effects yet)
2. Persist the draft in the staging store (abort if that fails)
3. Ask the processor for a payment object sized to the draft total, carrying
   the staging id in its metadata
4. Link the provider reference back to the staged draft

If step 3 fails the staged draft is deleted again. The wallet rail is the
exception to staging: its order is created in the backend-of-record before
the charge and the payment object carries that order id instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional

from domain.deposit import draft_has_installments, validate_deposit_eligibility
from domain.errors import (
    AuthorizationError,
    DownstreamCreationFailure,
    PaymentProviderError,
    StagingUnavailable,
    ValidationError,
)
from domain.fees import PAYPAL_EXPRESS_FEES, FeeSchedule, apply_fee_breakdown, derive_product_subtotal
from domain.order import compute_draft_total, shipping_total
from domain.payment import (
    PAYMENT_METHOD_METADATA_KEY,
    PRE_CREATED_ORDER_METADATA_KEY,
    STAGING_METADATA_KEY,
    PaymentRail,
)
from domain.staged_order import StagedOrderRecord
from repositories.order_repository import OrderBackendError, WooCommerceOrderRepository
from repositories.staging_repository import StagingStore, StagingStoreError
from services.paypal_gateway import PayPalGateway
from services.reconciliation_service import OrderReconciler, ReconciliationSource
from services.stripe_gateway import RAIL_METADATA_KEY, StripeGateway

logger = logging.getLogger(__name__)

REDIRECT_METHODS = frozenset({"klarna", "satispay"})


@dataclass(frozen=True, slots=True)
class CheckoutDraft:
    """Order draft as submitted by the storefront, plus the points it redeems."""

    order_payload: Mapping[str, Any]
    points_to_redeem: int = 0
    points_discount: Decimal = Decimal("0")

    @property
    def customer_id(self) -> Any:
        return self.order_payload.get("customer_id")


@dataclass(frozen=True, slots=True)
class CardInitiation:
    staging_id: str
    client_secret: str
    payment_intent_id: str
    requires_action: bool


@dataclass(frozen=True, slots=True)
class WalletInitiation:
    order_id: int
    client_secret: str
    payment_intent_id: str
    payment_status: str
    requires_action: bool


@dataclass(frozen=True, slots=True)
class RedirectInitiation:
    staging_id: str
    session_id: str
    url: Optional[str]


@dataclass(frozen=True, slots=True)
class PayPalInitiation:
    staging_id: str
    paypal_order_id: str
    approve_url: Optional[str]
    total: Decimal


class PaymentInitiationService:
    def __init__(
        self,
        staging: StagingStore,
        stripe_gateway: StripeGateway,
        paypal_gateway: PayPalGateway,
        orders: WooCommerceOrderRepository,
        reconciler: OrderReconciler,
        *,
        currency: str = "eur",
        frontend_url: str = "http://localhost:3000",
    ) -> None:
        self.staging = staging
        self.stripe = stripe_gateway
        self.paypal = paypal_gateway
        self.orders = orders
        self.reconciler = reconciler
        self.currency = currency.lower()
        self.frontend_url = frontend_url.rstrip("/")

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def prepare(self, draft: CheckoutDraft, context_label: str) -> Decimal:
        """
        Validate a draft and return the total to charge.

        Raises:
            ValidationError: malformed draft or non-positive total
            AuthorizationError: anonymous buyer with deposit/installment items
        """

        items = draft.order_payload.get("line_items") or []
        if not items:
            raise ValidationError("Order must contain at least one line item")
        for item in items:
            if not item.get("product_id"):
                raise ValidationError("Every line item needs a product_id")
            try:
                quantity = int(item.get("quantity") or 0)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid quantity for product {item.get('product_id')}")
            if quantity <= 0:
                raise ValidationError(f"Quantity must be positive for product {item.get('product_id')}")

        decision = validate_deposit_eligibility(
            draft.customer_id,
            draft_has_installments(draft.order_payload),
            context_label,
        )
        if not decision.is_valid:
            logger.warning(
                "Deposit checkout rejected for anonymous buyer",
                extra={"context": context_label, "error_code": decision.error_code},
            )
            raise AuthorizationError(decision.error_message or "Authentication required")

        try:
            total = compute_draft_total(draft.order_payload)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if total <= 0:
            raise ValidationError(f"Order total must be positive (got {total})")
        return total

    def _stage(self, rail: PaymentRail, draft: CheckoutDraft) -> str:
        staging_id = self.staging.generate_id(rail.staging_prefix)
        record = StagedOrderRecord(
            staging_id=staging_id,
            order_payload=dict(draft.order_payload),
            created_at=self.staging.now(),
            points_to_redeem=draft.points_to_redeem,
            points_discount=draft.points_discount,
        )
        if not self.staging.set(staging_id, record):
            raise StagingUnavailable(
                "Could not save the order before payment; please try again",
                context={"staging_id": staging_id, "rail": rail.value},
            )
        logger.info("Order draft staged", extra={"staging_id": staging_id, "rail": rail.value})
        return staging_id

    def _link(self, staging_id: str, reference: str) -> None:
        if not self.staging.set_payment_intent_id(staging_id, reference):
            logger.warning(
                "Could not link payment to staged draft",
                extra={"staging_id": staging_id, "payment_reference": reference},
            )

    def _discard(self, staging_id: str) -> None:
        try:
            self.staging.delete(staging_id)
        except StagingStoreError as e:
            logger.error(
                "Failed to delete orphaned staged draft",
                extra={"staging_id": staging_id, "error": str(e)},
            )
            return
        logger.info("Orphaned staged draft deleted", extra={"staging_id": staging_id})

    def _metadata(self, rail: PaymentRail, **values: Any) -> dict[str, str]:
        metadata = {RAIL_METADATA_KEY: rail.value}
        metadata.update({key: str(value) for key, value in values.items() if value not in (None, "")})
        return metadata

    # ------------------------------------------------------------------
    # Rails
    # ------------------------------------------------------------------

    def initiate_card(
        self,
        draft: CheckoutDraft,
        *,
        payment_method: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> CardInitiation:
        total = self.prepare(draft, "card checkout")
        staging_id = self._stage(PaymentRail.CARD, draft)
        try:
            intent = self.stripe.create_payment_intent(
                amount=total,
                currency=self.currency,
                metadata=self._metadata(
                    PaymentRail.CARD,
                    **{STAGING_METADATA_KEY: staging_id, "customer_id": draft.customer_id},
                ),
                payment_method=payment_method,
                confirm=bool(payment_method),
                return_url=return_url or f"{self.frontend_url}/checkout/success?data_id={staging_id}",
                idempotency_key=f"pi-{staging_id}",
            )
        except PaymentProviderError:
            self._discard(staging_id)
            raise

        self._link(staging_id, intent.payment_intent_id)
        return CardInitiation(
            staging_id=staging_id,
            client_secret=intent.client_secret,
            payment_intent_id=intent.payment_intent_id,
            requires_action=intent.requires_action,
        )

    def initiate_redirect(self, draft: CheckoutDraft, *, method: str = "klarna") -> RedirectInitiation:
        method = method.lower()
        if method not in REDIRECT_METHODS:
            raise ValidationError(f"Unsupported redirect payment method: {method}")

        total = self.prepare(draft, f"{method} checkout")
        staging_id = self._stage(PaymentRail.REDIRECT, draft)
        try:
            session = self.stripe.create_checkout_session(
                amount=total,
                currency=self.currency,
                metadata=self._metadata(
                    PaymentRail.REDIRECT,
                    **{
                        STAGING_METADATA_KEY: staging_id,
                        PAYMENT_METHOD_METADATA_KEY: method,
                        "customer_id": draft.customer_id,
                    },
                ),
                payment_method_types=[method],
                product_name=f"Order {staging_id}",
                success_url=(
                    f"{self.frontend_url}/checkout/success"
                    f"?session_id={{CHECKOUT_SESSION_ID}}&data_id={staging_id}"
                ),
                cancel_url=f"{self.frontend_url}/checkout?canceled=true",
                locale="it",
            )
        except PaymentProviderError:
            self._discard(staging_id)
            raise

        if session.payment_intent_id:
            self._link(staging_id, session.payment_intent_id)
        return RedirectInitiation(staging_id=staging_id, session_id=session.session_id, url=session.url)

    def initiate_wallet(
        self,
        draft: CheckoutDraft,
        *,
        payment_method: str,
        return_url: Optional[str] = None,
    ) -> WalletInitiation:
        """
        Apple Pay / Google Pay: create the order first, then charge it.

        Raises:
            DownstreamCreationFailure: the pending order could not be created
            PaymentProviderError: the charge could not be requested (the
                pending order is cancelled)
        """

        if not payment_method:
            raise ValidationError("payment_method is required for wallet payments")
        total = self.prepare(draft, "wallet checkout")

        pending = dict(draft.order_payload)
        pending.update(
            {
                "payment_method": "stripe",
                "payment_method_title": "Apple Pay / Google Pay",
                "set_paid": False,
                "status": "pending",
            }
        )
        try:
            order = self.orders.create_order(pending)
        except OrderBackendError as e:
            raise DownstreamCreationFailure(f"Could not create pending order: {e}") from e

        context = {"order_id": order.order_id, "rail": PaymentRail.WALLET.value}
        try:
            intent = self.stripe.create_payment_intent(
                amount=total,
                currency=self.currency,
                metadata=self._metadata(
                    PaymentRail.WALLET,
                    **{PRE_CREATED_ORDER_METADATA_KEY: order.order_id, "customer_id": draft.customer_id},
                ),
                payment_method=payment_method,
                confirm=True,
                return_url=return_url or f"{self.frontend_url}/checkout/success?order_id={order.order_id}",
                idempotency_key=f"wallet-{order.order_id}",
            )
        except PaymentProviderError:
            self._cancel_pending_order(order.order_id)
            raise

        logger.info(
            "Wallet payment requested",
            extra={**context, "payment_reference": intent.payment_intent_id, "status": intent.status},
        )
        if intent.status == "succeeded":
            # The charge has succeeded; if settling fails here the webhook or
            # complete-payment settles the order later.
            try:
                payment = self.stripe.retrieve(intent.payment_intent_id)
                self.reconciler.settle_pre_created(
                    payment, self.stripe, source=ReconciliationSource.COMPLETE_PAYMENT
                )
            except (DownstreamCreationFailure, PaymentProviderError) as e:
                logger.error(
                    "Charged wallet order not yet marked paid; left for webhook or complete-payment",
                    extra={**context, "payment_reference": intent.payment_intent_id, "error_code": e.code, "error": e.message},
                )

        return WalletInitiation(
            order_id=order.order_id,
            client_secret=intent.client_secret,
            payment_intent_id=intent.payment_intent_id,
            payment_status=intent.status,
            requires_action=intent.requires_action,
        )

    def _cancel_pending_order(self, order_id: int) -> None:
        try:
            self.orders.update_order(order_id, {"status": "cancelled"})
        except OrderBackendError as e:
            logger.error("Failed to cancel pending order", extra={"order_id": order_id, "error": str(e)})
            return
        logger.info("Pending order cancelled after payment failure", extra={"order_id": order_id})

    def initiate_paypal(
        self,
        draft: CheckoutDraft,
        *,
        charged_total: Optional[Decimal] = None,
        fee_schedule: FeeSchedule = PAYPAL_EXPRESS_FEES,
    ) -> PayPalInitiation:
        """
        Stage a draft and open a PayPal order for it.

        When `charged_total` is given it already includes the PayPal fee (as
        computed by the PayPal buttons); the product subtotal is recovered from
        it and a fee line is added so the order sums to the charge.
        """

        total = self.prepare(draft, "paypal checkout")
        if charged_total is not None:
            if draft.order_payload.get("fee_lines"):
                raise ValidationError(
                    "A fee-inclusive PayPal total cannot be combined with existing fee lines (e.g. a points discount)"
                )
            try:
                breakdown = derive_product_subtotal(
                    charged_total, shipping_total(draft.order_payload), fee_schedule
                )
                payload = apply_fee_breakdown(draft.order_payload, breakdown, fee_schedule)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            draft = CheckoutDraft(
                order_payload=payload,
                points_to_redeem=draft.points_to_redeem,
                points_discount=draft.points_discount,
            )
            total = compute_draft_total(payload)

        staging_id = self._stage(PaymentRail.PAYPAL, draft)
        try:
            created = self.paypal.create_order(
                amount=total,
                currency=self.currency,
                staging_id=staging_id,
                return_url=f"{self.frontend_url}/checkout/paypal/return?data_id={staging_id}",
                cancel_url=f"{self.frontend_url}/checkout?canceled=true",
            )
        except PaymentProviderError:
            self._discard(staging_id)
            raise

        self._link(staging_id, created.paypal_order_id)
        return PayPalInitiation(
            staging_id=staging_id,
            paypal_order_id=created.paypal_order_id,
            approve_url=created.approve_url,
            total=total,
        )


__all__ = [
    "CardInitiation",
    "CheckoutDraft",
    "PayPalInitiation",
    "PaymentInitiationService",
    "REDIRECT_METHODS",
    "RedirectInitiation",
    "WalletInitiation",
]
