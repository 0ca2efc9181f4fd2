"""
Domain: payment reconciliation error taxonomy.

Every failure a payment flow can surface carries a stable `code` so that the
HTTP layer and operators can tell a retriable condition from a terminal one.

An idempotency hit is deliberately absent here: finding an existing order for
a payment reference is a successful outcome (`already_exists=True`), not an
exception.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class PaymentFlowError(Exception):
    """Base class for every error raised by the payment flows."""

    code: str = "PAYMENT_FLOW_ERROR"

    def __init__(self, message: str, *, context: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})


class ValidationError(PaymentFlowError):
    """Malformed input; the message is safe to show to the buyer."""

    code = "VALIDATION_ERROR"


class AuthorizationError(PaymentFlowError):
    """Anonymous buyer attempting a deposit/installment checkout."""

    code = "DEPOSIT_REQUIRES_AUTHENTICATION"


class UpstreamVerificationError(PaymentFlowError):
    """The processor reports the payment as not captured (or not matching)."""

    code = "PAYMENT_NOT_CAPTURED"


class StagingExpiredOrMissing(PaymentFlowError):
    """
    The staged draft for a captured payment is gone.

    Fatal for that payment: an operator must reconcile by hand. Never fall
    back to creating an order with default data.
    """

    code = "STAGING_EXPIRED_OR_MISSING"


class DownstreamCreationFailure(PaymentFlowError):
    """The backend-of-record rejected the create call; payment is captured but unfulfilled."""

    code = "ORDER_CREATION_FAILED"


class PaymentProviderError(PaymentFlowError):
    """A payment processor call failed (network, auth, or rejected request)."""

    code = "PAYMENT_PROVIDER_ERROR"


class StagingUnavailable(PaymentFlowError):
    """The draft could not be persisted; no charge may be requested without it."""

    code = "STAGING_UNAVAILABLE"


__all__ = [
    "PaymentFlowError",
    "ValidationError",
    "AuthorizationError",
    "UpstreamVerificationError",
    "StagingExpiredOrMissing",
    "DownstreamCreationFailure",
    "PaymentProviderError",
    "StagingUnavailable",
]
