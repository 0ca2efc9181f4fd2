"""
Runtime configuration.

Values come from the process environment, with `.env` in the project root
loaded first. Secrets are only required by the component that uses them, so
a missing key fails when that component is wired, with a message naming the
variable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from services.paypal_gateway import SANDBOX_API_URL

env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

STAGING_BACKENDS = ("supabase", "memory")


def _require(name: str, value: Optional[str], hint: str) -> str:
    if not value:
        raise RuntimeError(f"Missing environment variable: {name}. {hint}")
    return value


@dataclass(frozen=True, slots=True)
class Settings:
    staging_backend: str = "supabase"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_api_url: str = SANDBOX_API_URL
    woocommerce_url: Optional[str] = None
    woocommerce_consumer_key: Optional[str] = None
    woocommerce_consumer_secret: Optional[str] = None
    points_api_url: Optional[str] = None
    points_api_key: Optional[str] = None
    frontend_url: str = "http://localhost:3000"
    currency: str = "eur"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        backend = (os.getenv("STAGING_BACKEND") or "supabase").lower()
        if backend not in STAGING_BACKENDS:
            raise RuntimeError(
                f"Invalid STAGING_BACKEND={backend!r}. Use one of: {', '.join(STAGING_BACKENDS)}."
            )
        return cls(
            staging_backend=backend,
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            paypal_client_id=os.getenv("PAYPAL_CLIENT_ID"),
            paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET"),
            paypal_api_url=os.getenv("PAYPAL_API_URL") or SANDBOX_API_URL,
            woocommerce_url=os.getenv("WOOCOMMERCE_URL"),
            woocommerce_consumer_key=os.getenv("WOOCOMMERCE_CONSUMER_KEY"),
            woocommerce_consumer_secret=os.getenv("WOOCOMMERCE_CONSUMER_SECRET"),
            points_api_url=os.getenv("POINTS_API_URL"),
            points_api_key=os.getenv("POINTS_API_KEY"),
            frontend_url=os.getenv("FRONTEND_URL") or "http://localhost:3000",
            currency=(os.getenv("CURRENCY") or "eur").lower(),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )

    def woocommerce_credentials(self) -> tuple[str, str, str]:
        return (
            _require("WOOCOMMERCE_URL", self.woocommerce_url, "Set it to the store base URL."),
            _require("WOOCOMMERCE_CONSUMER_KEY", self.woocommerce_consumer_key, "Create a REST API key in WooCommerce."),
            _require("WOOCOMMERCE_CONSUMER_SECRET", self.woocommerce_consumer_secret, "Create a REST API key in WooCommerce."),
        )

    def points_credentials(self) -> tuple[str, str]:
        return (
            _require("POINTS_API_URL", self.points_api_url or self.woocommerce_url, "Set it to the loyalty ledger base URL."),
            _require("POINTS_API_KEY", self.points_api_key, "Set it to the loyalty ledger API key."),
        )


__all__ = ["Settings", "STAGING_BACKENDS"]
