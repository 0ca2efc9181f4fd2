"""
Orders API Endpoints.

Completion of orders created before the charge, and operator recovery of
orders whose payment was captured but never materialized.
"""

from fastapi import APIRouter, BackgroundTasks, Depends

from api.dependencies import get_completion_service, get_points_outbox, get_recovery_service
from api.errors import to_http_exception
from api.models import CompletePaymentRequest, ReconciliationResponse, RecoverRequest
from api.routers.payments import reconciliation_response
from services.completion_service import PaymentCompletionService
from services.loyalty_service import PointsRedemptionOutbox
from services.recovery_service import OrderRecoveryService

router = APIRouter()


@router.post(
    "/orders/{order_id}/complete-payment",
    response_model=ReconciliationResponse,
    summary="Complete Payment",
    description="Mark an order created before the charge as paid, after verifying the payment with Stripe.",
)
def complete_payment(
    order_id: int,
    request: CompletePaymentRequest,
    service: PaymentCompletionService = Depends(get_completion_service),
):
    try:
        outcome = service.complete_pre_created(order_id, request.payment_reference)
    except Exception as e:
        raise to_http_exception(e, "complete payment")

    return reconciliation_response(outcome)


@router.post(
    "/recover",
    response_model=ReconciliationResponse,
    summary="Recover Order",
    description="""
    Re-verify a payment with its processor and materialize the order from
    its staged draft if it does not exist yet.

    Safe to call repeatedly: once the order exists every call returns it with
    `already_exists: true`.
    """,
)
def recover_order(
    request: RecoverRequest,
    background_tasks: BackgroundTasks,
    service: OrderRecoveryService = Depends(get_recovery_service),
    outbox: PointsRedemptionOutbox = Depends(get_points_outbox),
):
    try:
        outcome = service.recover(request.staging_id, request.payment_reference, request.rail)
    except Exception as e:
        raise to_http_exception(e, "recover order")

    if not outcome.already_exists:
        background_tasks.add_task(outbox.drain)
    return reconciliation_response(outcome)
