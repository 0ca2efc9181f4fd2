"""
Service wiring.

Each provider builds its component once per process. Routers receive them
through `Depends(...)`, so tests swap them with `app.dependency_overrides`.
Scripts call the same providers directly.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from api.settings import Settings
from repositories.client import get_supabase
from repositories.order_repository import WooCommerceOrderRepository
from repositories.staging_repository import InMemoryStagingStore, StagingStore, SupabaseStagingStore
from services.completion_service import PaymentCompletionService
from services.initiation_service import PaymentInitiationService
from services.loyalty_service import LoyaltyLedgerClient, PointsRedemptionOutbox
from services.payment_lookup import PaymentLookup
from services.paypal_gateway import PayPalGateway
from services.reconciliation_service import OrderReconciler
from services.recovery_service import OrderRecoveryService
from services.stripe_gateway import StripeGateway
from services.webhook_service import StripeWebhookService

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def get_staging_store() -> StagingStore:
    settings = get_settings()
    if settings.staging_backend == "memory":
        logger.warning("Using in-memory staging store; drafts are lost on restart and not shared between instances")
        return InMemoryStagingStore()
    return SupabaseStagingStore(get_supabase)


@lru_cache(maxsize=1)
def get_order_repository() -> WooCommerceOrderRepository:
    base_url, key, secret = get_settings().woocommerce_credentials()
    return WooCommerceOrderRepository.from_credentials(base_url, key, secret)


@lru_cache(maxsize=1)
def get_stripe_gateway() -> StripeGateway:
    settings = get_settings()
    return StripeGateway(settings.stripe_secret_key or "", settings.stripe_webhook_secret)


@lru_cache(maxsize=1)
def get_paypal_gateway() -> PayPalGateway:
    settings = get_settings()
    return PayPalGateway.from_credentials(
        settings.paypal_client_id or "",
        settings.paypal_client_secret or "",
        api_url=settings.paypal_api_url,
    )


@lru_cache(maxsize=1)
def get_points_outbox() -> PointsRedemptionOutbox:
    base_url, api_key = get_settings().points_credentials()
    return PointsRedemptionOutbox(LoyaltyLedgerClient.from_credentials(base_url, api_key))


@lru_cache(maxsize=1)
def get_payment_lookup() -> PaymentLookup:
    return PaymentLookup(stripe=get_stripe_gateway(), paypal=get_paypal_gateway())


@lru_cache(maxsize=1)
def get_reconciler() -> OrderReconciler:
    return OrderReconciler(get_staging_store(), get_order_repository(), get_points_outbox())


@lru_cache(maxsize=1)
def get_initiation_service() -> PaymentInitiationService:
    settings = get_settings()
    return PaymentInitiationService(
        get_staging_store(),
        get_stripe_gateway(),
        get_paypal_gateway(),
        get_order_repository(),
        get_reconciler(),
        currency=settings.currency,
        frontend_url=settings.frontend_url,
    )


@lru_cache(maxsize=1)
def get_webhook_service() -> StripeWebhookService:
    return StripeWebhookService(get_stripe_gateway(), get_reconciler())


@lru_cache(maxsize=1)
def get_completion_service() -> PaymentCompletionService:
    return PaymentCompletionService(get_payment_lookup(), get_reconciler(), get_order_repository())


@lru_cache(maxsize=1)
def get_recovery_service() -> OrderRecoveryService:
    return OrderRecoveryService(get_payment_lookup(), get_reconciler())


__all__ = [
    "get_completion_service",
    "get_initiation_service",
    "get_order_repository",
    "get_payment_lookup",
    "get_paypal_gateway",
    "get_points_outbox",
    "get_reconciler",
    "get_recovery_service",
    "get_settings",
    "get_staging_store",
    "get_stripe_gateway",
    "get_webhook_service",
]
