"""
Translate service exceptions into HTTP errors.

Client-facing detail carries the stable error `code` so the storefront can
tell "keep polling" from "show an error" without parsing messages.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException

from domain.errors import (
    AuthorizationError,
    DownstreamCreationFailure,
    PaymentFlowError,
    PaymentProviderError,
    StagingExpiredOrMissing,
    StagingUnavailable,
    UpstreamVerificationError,
    ValidationError,
)
from repositories.staging_repository import StagingStoreError

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (UpstreamVerificationError, 402),
    (StagingExpiredOrMissing, 410),
    (DownstreamCreationFailure, 502),
    (PaymentProviderError, 502),
    (StagingUnavailable, 503),
)


def to_http_exception(error: Exception, action: str) -> HTTPException:
    if isinstance(error, HTTPException):
        return error

    if isinstance(error, PaymentFlowError):
        status_code = next(
            (status for error_type, status in STATUS_BY_ERROR if isinstance(error, error_type)),
            500,
        )
        log = logger.warning if status_code < 500 else logger.error
        log(
            f"Failed to {action}",
            extra={"error_code": error.code, "error": error.message, "status_code": status_code},
        )
        return HTTPException(status_code=status_code, detail={"code": error.code, "message": error.message})

    if isinstance(error, StagingStoreError):
        logger.error(f"Failed to {action}: staging store unavailable", extra={"error": str(error)})
        return HTTPException(
            status_code=503,
            detail={"code": StagingUnavailable.code, "message": "Order staging is temporarily unavailable"},
        )

    logger.exception(f"Failed to {action}")
    return HTTPException(status_code=500, detail=f"Failed to {action}: {error}")


__all__ = ["STATUS_BY_ERROR", "to_http_exception"]
