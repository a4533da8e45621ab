"""Webhook API routes"""
import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from subsync.core.config import settings
from subsync.db.store import Datastore
from subsync.schemas.events import InboundRequest
from subsync.services import responses
from subsync.services.notifications import Notifier
from subsync.services.payment_provider import PaymentProvider
from subsync.services.webhook_service import WebhookProcessor

router = APIRouter(prefix="/api/subscriptions", tags=["webhooks"])
logger = logging.getLogger(__name__)

# Non-standard "client closed request" status, never seen by the provider
CLIENT_CLOSED_REQUEST = 499


def get_datastore(request: Request) -> Datastore:
    return request.app.state.datastore


def get_payment_provider(request: Request) -> PaymentProvider:
    return request.app.state.payment_provider


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_webhook_processor(
    store: Datastore = Depends(get_datastore),
    provider: PaymentProvider = Depends(get_payment_provider),
    notifier: Notifier = Depends(get_notifier),
) -> WebhookProcessor:
    return WebhookProcessor(store, provider, notifier)


@router.post("/webhook")
async def stripe_webhook(request: Request, processor: WebhookProcessor = Depends(get_webhook_processor)):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.
    """
    # Read body as raw bytes (critical for signature verification)
    payload = await request.body()

    # Only point at which the request is abandoned; once processing starts it runs to completion
    if await request.is_disconnected():
        logger.info("Webhook sender disconnected before processing started")
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    inbound = InboundRequest(
        raw_body=payload,
        signature_header=request.headers.get("stripe-signature"),
        received_at=datetime.now(timezone.utc),
    )

    # The worker thread is not interrupted on timeout; the provider retries and
    # the idempotency claim absorbs the duplicate if the first attempt committed
    loop = asyncio.get_running_loop()
    try:
        result = await asyncio.wait_for(
            loop.run_in_executor(None, processor.process, inbound),
            timeout=settings.WEBHOOK_PROCESSING_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.error(f"Webhook processing exceeded {settings.WEBHOOK_PROCESSING_TIMEOUT}s, asking provider to retry")
        result = responses.timed_out(settings.WEBHOOK_PROCESSING_TIMEOUT)

    return JSONResponse(status_code=result.status_code, content=result.body())
