"""
Order repository (backend-of-record).

Thin persistence wrapper over the WooCommerce REST API (wc/v3). It does not
enforce reconciliation rules; it only creates, updates and lists orders.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, List, Mapping, Optional

import httpx

from domain.order import MaterializedOrder


class OrderBackendError(RuntimeError):
    """Raised when the backend-of-record rejects or fails a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _row_to_order(row: Mapping[str, Any]) -> MaterializedOrder:
    """Convert a WooCommerce order document into a MaterializedOrder."""

    meta = {
        str(entry.get("key")): str(entry.get("value"))
        for entry in row.get("meta_data") or []
        if entry.get("key") is not None
    }
    total = row.get("total")
    return MaterializedOrder(
        order_id=int(row["id"]),
        status=str(row.get("status") or "pending"),
        total=Decimal(str(total)) if total not in (None, "") else None,
        meta=meta,
    )


class WooCommerceOrderRepository:
    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    @classmethod
    def from_credentials(
        cls,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        *,
        timeout: float = 20.0,
    ) -> WooCommerceOrderRepository:
        client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/wp-json/wc/v3/",
            auth=(consumer_key, consumer_secret),
            timeout=timeout,
        )
        return cls(client)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise OrderBackendError(
                f"{method} {path} failed with {e.response.status_code}: {e.response.text[:300]}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise OrderBackendError(f"{method} {path} failed: {e}") from e
        return response.json()

    def create_order(self, payload: Mapping[str, Any]) -> MaterializedOrder:
        data = self._request("POST", "orders", json=dict(payload))
        if not isinstance(data, Mapping) or "id" not in data:
            raise OrderBackendError("Invalid response from order creation")
        return _row_to_order(data)

    def get_order(self, order_id: int) -> Optional[MaterializedOrder]:
        try:
            data = self._request("GET", f"orders/{order_id}")
        except OrderBackendError as e:
            if e.status_code == 404:
                return None
            raise
        return _row_to_order(data)

    def update_order(self, order_id: int, patch: Mapping[str, Any]) -> MaterializedOrder:
        data = self._request("PUT", f"orders/{order_id}", json=dict(patch))
        return _row_to_order(data)

    def list_recent_orders(self, *, limit: int = 50) -> List[MaterializedOrder]:
        """Most recently created orders, newest first."""

        data = self._request(
            "GET",
            "orders",
            params={"per_page": limit, "orderby": "date", "order": "desc"},
        )
        return [_row_to_order(row) for row in data or []]

    def add_order_note(self, order_id: int, note: str) -> None:
        self._request(
            "POST",
            f"orders/{order_id}/notes",
            json={"note": note, "customer_note": False},
        )


__all__ = [
    "OrderBackendError",
    "WooCommerceOrderRepository",
]
