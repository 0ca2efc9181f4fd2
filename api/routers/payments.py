"""
Payments API Endpoints.

Initiation per rail, completion-status polling, fallback finalize and PayPal
capture.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response

from api.dependencies import get_completion_service, get_initiation_service, get_points_outbox
from api.errors import to_http_exception
from api.models import (
    CardPaymentRequest,
    CardPaymentResponse,
    CompletionStatusResponse,
    PayPalPaymentRequest,
    PayPalPaymentResponse,
    ReconciliationResponse,
    RedirectPaymentRequest,
    RedirectPaymentResponse,
    WalletPaymentRequest,
    WalletPaymentResponse,
)
from domain.payment import PaymentRail
from services.completion_service import CompletionStatus, PaymentCompletionService
from services.initiation_service import CheckoutDraft, PaymentInitiationService
from services.loyalty_service import PointsRedemptionOutbox
from services.reconciliation_service import ReconciliationOutcome

router = APIRouter()


def _draft(request) -> CheckoutDraft:
    return CheckoutDraft(
        order_payload=request.order.model_dump(exclude_none=True),
        points_to_redeem=request.points_to_redeem,
        points_discount=request.points_discount,
    )


def _status_response(status: CompletionStatus, response: Response) -> CompletionStatusResponse:
    if not status.ready:
        response.status_code = 202
        if status.retry_after_seconds is not None:
            response.headers["Retry-After"] = str(max(1, round(status.retry_after_seconds)))
    return CompletionStatusResponse(
        payment_reference=status.payment_reference,
        ready=status.ready,
        lifecycle=status.lifecycle.value,
        order_id=status.order_id,
        already_exists=status.already_exists,
        retry_after_seconds=status.retry_after_seconds,
        attempt_ceiling=status.attempt_ceiling,
        escalate=status.escalate,
    )


def reconciliation_response(outcome: ReconciliationOutcome) -> ReconciliationResponse:
    return ReconciliationResponse(
        payment_reference=outcome.payment_reference,
        order_id=outcome.order_id,
        already_exists=outcome.already_exists,
        lifecycle=outcome.lifecycle.value,
        resolution=outcome.resolution.value,
    )


# ============================================================================
# Initiation
# ============================================================================

@router.post(
    "/payments/card",
    response_model=CardPaymentResponse,
    summary="Start Card Payment",
    description="Stage the order draft and create a PaymentIntent for it.",
)
def start_card_payment(
    request: CardPaymentRequest,
    service: PaymentInitiationService = Depends(get_initiation_service),
):
    try:
        result = service.initiate_card(
            _draft(request),
            payment_method=request.payment_method,
            return_url=request.return_url,
        )
    except Exception as e:
        raise to_http_exception(e, "start card payment")

    return CardPaymentResponse(
        staging_id=result.staging_id,
        client_secret=result.client_secret,
        payment_intent_id=result.payment_intent_id,
        requires_action=result.requires_action,
    )


@router.post(
    "/payments/wallet",
    response_model=WalletPaymentResponse,
    summary="Start Wallet Payment",
    description="Create a pending order and charge it with an Apple Pay / Google Pay payment method.",
)
def start_wallet_payment(
    request: WalletPaymentRequest,
    service: PaymentInitiationService = Depends(get_initiation_service),
):
    try:
        result = service.initiate_wallet(
            _draft(request),
            payment_method=request.payment_method,
            return_url=request.return_url,
        )
    except Exception as e:
        raise to_http_exception(e, "start wallet payment")

    return WalletPaymentResponse(
        order_id=result.order_id,
        client_secret=result.client_secret,
        payment_intent_id=result.payment_intent_id,
        payment_status=result.payment_status,
        requires_action=result.requires_action,
    )


@router.post(
    "/payments/redirect",
    response_model=RedirectPaymentResponse,
    summary="Start Redirect Payment",
    description="Stage the order draft and open a Stripe Checkout Session (Klarna, Satispay).",
)
def start_redirect_payment(
    request: RedirectPaymentRequest,
    service: PaymentInitiationService = Depends(get_initiation_service),
):
    try:
        result = service.initiate_redirect(_draft(request), method=request.method)
    except Exception as e:
        raise to_http_exception(e, "start redirect payment")

    return RedirectPaymentResponse(staging_id=result.staging_id, session_id=result.session_id, url=result.url)


@router.post(
    "/payments/paypal",
    response_model=PayPalPaymentResponse,
    summary="Start PayPal Payment",
    description="Stage the order draft and create a PayPal order carrying the staging id.",
)
def start_paypal_payment(
    request: PayPalPaymentRequest,
    service: PaymentInitiationService = Depends(get_initiation_service),
):
    try:
        result = service.initiate_paypal(_draft(request), charged_total=request.charged_total)
    except Exception as e:
        raise to_http_exception(e, "start PayPal payment")

    return PayPalPaymentResponse(
        staging_id=result.staging_id,
        paypal_order_id=result.paypal_order_id,
        approve_url=result.approve_url,
        total=result.total,
    )


# ============================================================================
# Completion
# ============================================================================

@router.post(
    "/payments/paypal/{paypal_order_id}/capture",
    response_model=ReconciliationResponse,
    summary="Capture PayPal Order",
)
def capture_paypal_payment(
    paypal_order_id: str,
    background_tasks: BackgroundTasks,
    service: PaymentCompletionService = Depends(get_completion_service),
    outbox: PointsRedemptionOutbox = Depends(get_points_outbox),
):
    try:
        outcome = service.capture_paypal(paypal_order_id)
    except Exception as e:
        raise to_http_exception(e, "capture PayPal payment")

    background_tasks.add_task(outbox.drain)
    return reconciliation_response(outcome)


@router.get(
    "/payments/{reference}/status",
    response_model=CompletionStatusResponse,
    summary="Completion Status",
    description="200 with the order id once it exists, 202 with a Retry-After header while it does not.",
)
def get_completion_status(
    reference: str,
    response: Response,
    rail: PaymentRail = Query(PaymentRail.CARD),
    attempt: int = Query(1, ge=1),
    service: PaymentCompletionService = Depends(get_completion_service),
):
    try:
        status = service.status(reference, rail, attempt=attempt)
    except Exception as e:
        raise to_http_exception(e, "check payment status")

    return _status_response(status, response)


@router.post(
    "/payments/{reference}/finalize",
    response_model=CompletionStatusResponse,
    summary="Finalize Payment",
    description="Fallback for a late webhook: materialize the order if the payment is captured.",
)
def finalize_payment(
    reference: str,
    response: Response,
    background_tasks: BackgroundTasks,
    rail: PaymentRail = Query(PaymentRail.CARD),
    staging_id: str | None = Query(None),
    attempt: int = Query(1, ge=1),
    service: PaymentCompletionService = Depends(get_completion_service),
    outbox: PointsRedemptionOutbox = Depends(get_points_outbox),
):
    try:
        status = service.finalize(reference, rail, staging_id=staging_id, attempt=attempt)
    except Exception as e:
        raise to_http_exception(e, "finalize payment")

    if status.ready:
        background_tasks.add_task(outbox.drain)
    return _status_response(status, response)
