"""
Webhooks API Endpoints.

Stripe delivers events here. Any verified event is acknowledged with 200,
even when processing it failed, so Stripe does not redeliver it indefinitely;
failures are logged for recovery. Only an invalid signature gets a 400.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from api.dependencies import get_points_outbox, get_webhook_service
from api.models import WebhookAckResponse
from services.loyalty_service import PointsRedemptionOutbox
from services.stripe_gateway import WebhookSignatureError
from services.webhook_service import StripeWebhookService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/webhooks/stripe",
    response_model=WebhookAckResponse,
    summary="Stripe Webhook",
)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
    outbox: PointsRedemptionOutbox = Depends(get_points_outbox),
):
    # The signature covers the raw body, so it is read before any parsing.
    payload = await request.body()
    try:
        ack = await run_in_threadpool(service.handle, payload, stripe_signature)
    except WebhookSignatureError as e:
        raise HTTPException(status_code=400, detail=f"Webhook signature verification failed: {e}")
    except Exception:
        logger.exception("Unhandled error while processing Stripe webhook")
        return WebhookAckResponse(received=True)

    if ack.outcome is not None and not ack.outcome.already_exists:
        background_tasks.add_task(outbox.drain)
    return WebhookAckResponse(received=True)
