"""
PayPal gateway (Orders v2 REST API).

- OAuth2 client-credentials token, cached until shortly before it expires
- create / capture / retrieve orders
- `custom_id` on the purchase unit carries the staging id

A completed PayPal order cannot be annotated, so `stamp_order` records
nothing on the provider side; the staging store's completed-index and the
recent-orders scan cover idempotency for this rail.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from domain.errors import PaymentProviderError
from domain.order import to_decimal
from domain.payment import STAGING_METADATA_KEY, PaymentIntentRef, PaymentRail
from services.gateway import PaymentGateway

logger = logging.getLogger(__name__)

SANDBOX_API_URL = "https://api-m.sandbox.paypal.com"
LIVE_API_URL = "https://api-m.paypal.com"

# Refresh the token this many seconds before PayPal says it expires.
_TOKEN_EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True, slots=True)
class CreatedPayPalOrder:
    paypal_order_id: str
    status: str
    approve_url: Optional[str]


def paypal_order_to_ref(order: Mapping[str, Any]) -> PaymentIntentRef:
    units = order.get("purchase_units") or [{}]
    unit = units[0]
    amount = unit.get("amount") or {}
    captures = ((unit.get("payments") or {}).get("captures")) or []
    if captures:
        amount = captures[0].get("amount") or amount

    metadata: Dict[str, str] = {}
    custom_id = unit.get("custom_id") or (captures[0].get("custom_id") if captures else None)
    if custom_id:
        metadata[STAGING_METADATA_KEY] = str(custom_id)

    status = str(order.get("status") or "")
    return PaymentIntentRef(
        reference=str(order.get("id")),
        rail=PaymentRail.PAYPAL,
        status=status,
        captured=status == "COMPLETED",
        amount=to_decimal(amount.get("value"), name="purchase_units.amount"),
        currency=str(amount.get("currency_code") or "").lower(),
        metadata=metadata,
        failed=status == "VOIDED",
    )


class PayPalGateway(PaymentGateway):
    def __init__(self, client_id: str, client_secret: str, client: httpx.Client) -> None:
        if not client_id or not client_secret:
            raise RuntimeError(
                "Missing PayPal credentials. Set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET."
            )
        self._client_id = client_id
        self._client_secret = client_secret
        self._client = client
        self._token_lock = threading.Lock()
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0

    @classmethod
    def from_credentials(
        cls,
        client_id: str,
        client_secret: str,
        *,
        api_url: str = SANDBOX_API_URL,
        timeout: float = 20.0,
    ) -> PayPalGateway:
        return cls(client_id, client_secret, httpx.Client(base_url=api_url, timeout=timeout))

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            try:
                response = self._client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self._client_id, self._client_secret),
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise PaymentProviderError(f"PayPal authentication failed: {e}") from e

            data = response.json()
            token = data.get("access_token")
            if not token:
                raise PaymentProviderError("PayPal authentication returned no access token")
            expires_in = int(data.get("expires_in") or 0)
            self._token = token
            self._token_expires_at = time.monotonic() + max(expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS, 0)
            return token

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        try:
            return self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise PaymentProviderError(f"PayPal {method} {path} failed: {e}") from e

    def create_order(
        self,
        *,
        amount: Decimal,
        currency: str,
        staging_id: str,
        return_url: str,
        cancel_url: str,
    ) -> CreatedPayPalOrder:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "custom_id": staging_id,
                    "amount": {"currency_code": currency.upper(), "value": f"{amount:.2f}"},
                }
            ],
            "application_context": {"return_url": return_url, "cancel_url": cancel_url},
        }
        response = self._request("POST", "/v2/checkout/orders", json=body)
        if response.status_code >= 400:
            raise PaymentProviderError(
                f"PayPal order creation failed with {response.status_code}: {response.text[:300]}",
                context={"staging_id": staging_id},
            )
        data = response.json()
        approve_url = next(
            (link.get("href") for link in data.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return CreatedPayPalOrder(
            paypal_order_id=str(data["id"]),
            status=str(data.get("status") or ""),
            approve_url=approve_url,
        )

    def capture(self, paypal_order_id: str) -> PaymentIntentRef:
        response = self._request("POST", f"/v2/checkout/orders/{paypal_order_id}/capture")
        if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
            logger.info(
                "PayPal order already captured",
                extra={"payment_reference": paypal_order_id},
            )
            return self.retrieve(paypal_order_id)
        if response.status_code >= 400:
            raise PaymentProviderError(
                f"PayPal capture failed with {response.status_code}: {response.text[:300]}",
                context={"payment_reference": paypal_order_id},
            )
        return paypal_order_to_ref(response.json())

    def retrieve(self, reference: str) -> PaymentIntentRef:
        response = self._request("GET", f"/v2/checkout/orders/{reference}")
        if response.status_code >= 400:
            raise PaymentProviderError(
                f"PayPal order {reference} could not be retrieved ({response.status_code})",
                context={"payment_reference": reference},
            )
        return paypal_order_to_ref(response.json())

    def stamp_order(self, payment: PaymentIntentRef, order_id: int) -> None:
        logger.debug(
            "PayPal orders carry no post-capture stamp",
            extra={"payment_reference": payment.reference, "order_id": order_id},
        )


__all__ = [
    "CreatedPayPalOrder",
    "LIVE_API_URL",
    "PayPalGateway",
    "SANDBOX_API_URL",
    "paypal_order_to_ref",
]
