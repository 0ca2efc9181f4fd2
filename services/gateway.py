"""
Payment gateway interface used by the reconciliation paths.

Each processor exposes the two operations reconciliation needs: re-reading
the payment object (never trusting the caller) and writing the idempotency
stamp that names the order a payment produced.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment import PaymentIntentRef


class PaymentGateway(ABC):
    @abstractmethod
    def retrieve(self, reference: str) -> PaymentIntentRef:
        """Fetch the current state of a payment directly from the processor."""

    @abstractmethod
    def stamp_order(self, payment: PaymentIntentRef, order_id: int) -> None:
        """Record `order_id` on the provider payment object (idempotency stamp)."""


__all__ = ["PaymentGateway"]
