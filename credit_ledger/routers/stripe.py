import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, Header
from sqlalchemy.orm import Session
from fastapi.concurrency import run_in_threadpool

from ..db import get_db
from ..config import settings
from ..services.stripe_events import StripeEventProcessor
from ..models import PaymentEventLog

stripe.api_key = settings.stripe_secret_key
router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: str = Header(None, alias="stripe-signature")
):
    """Stripe webhook handler with database-level idempotency."""

    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    # Get raw body for signature verification
    body = await request.body()
    payload = body.decode("utf-8")

    try:
        stripe.WebhookSignature.verify_header(
            payload,
            stripe_signature,
            settings.stripe_webhook_secret,
            tolerance=settings.webhook_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid signature in webhook: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError as e:
        logger.error(f"Invalid payload in webhook: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    logger.info(f"Received Stripe webhook: {event.get('id')} ({event.get('type')})")

    processor = StripeEventProcessor(db)
    try:
        # processing takes account locks and retries with sleeps, keep it off the event loop
        success, message = await run_in_threadpool(processor.process_event, event)
    except Exception as e:
        logger.exception(f"Unexpected error processing webhook {event.get('id')}: {e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    if not success:
        # 400 for malformed events, 500 so Stripe redelivers everything else
        status_code = 400 if "Invalid" in message else 500
        logger.error(f"Webhook processing failed: {message}")
        raise HTTPException(status_code=status_code, detail=message)

    logger.info(f"Webhook processed successfully: {event.get('id')}")
    return {"status": "success", "message": message}


@router.get("/events/{event_id}/status")
def get_event_status(
    event_id: str,
    db: Session = Depends(get_db)
):
    """Get processing status of a Stripe event."""
    event_log = db.query(PaymentEventLog).filter(
        PaymentEventLog.event_id == event_id
    ).first()

    if not event_log:
        raise HTTPException(status_code=404, detail="Event not found")

    return {
        "event_id": event_id,
        "event_type": event_log.event_type,
        "processed": event_log.processed,
        "processing_attempts": event_log.processing_attempts,
        "error_message": event_log.error_message,
        "processed_at": event_log.processed_at,
        "created_at": event_log.created_at,
        "next_retry_at": event_log.next_retry_at,
        "dead_letter": event_log.dead_letter,
        "granted": event_log.granted,
        "batch_id": str(event_log.batch_id) if event_log.batch_id else None,
        "outcome_reason": event_log.outcome_reason,
    }
