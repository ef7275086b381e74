"""
Stripe webhook endpoint.

Verifies the Stripe-Signature header before anything is parsed, then hands
the event to the reconciler. Unrecognised event types are acknowledged so
Stripe does not keep redelivering them.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paywall.config import settings
from paywall.database import get_db
from paywall.dependencies import get_reconciler
from paywall.errors import InvalidWebhookError
from paywall.services.gateway_events import parse_event
from paywall.services.reconciler import StateReconciler
from paywall.stripe_client import construct_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: StateReconciler = Depends(get_reconciler),
):
    if not settings.stripe_webhook_secret:
        logger.error("❌ [Webhook] STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret not configured"
        )

    # Raw body is required for signature verification
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.warning("⚠️ [Webhook] missing Stripe-Signature header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Stripe signature"
        )

    try:
        data = construct_event(payload, signature, settings.stripe_webhook_secret)
    except InvalidWebhookError as e:
        logger.warning(f"⚠️ [Webhook] rejected: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    event = parse_event(data)
    logger.info(f"📨 [Webhook] {event.event_type} id={event.event_id}")

    if event.kind is None:
        return {"received": True, "applied": False}

    try:
        applied = await reconciler.apply(db, event)
    except SQLAlchemyError as e:
        logger.error(f"❌ [Webhook] failed to apply {event.event_type} {event.event_id}: {e}")
        # 500 so Stripe redelivers; reapplying is safe
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to handle webhook"
        )

    return {"received": True, "applied": applied}
