"""
Webhooks: Stripe (billing events).
Each Stripe event id is processed once; replays are acknowledged as duplicates.
"""
from __future__ import annotations

import json
import logging

import stripe
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

import stripe_billing
from billing_monitoring import track_webhook_failure
from db.models import StripeWebhookEvent
from db.session import get_db
from errors import ApiError

_LOG = logging.getLogger("uvicorn.error")

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """Verify Stripe signature and apply subscription events. Return 200 to acknowledge."""
    payload = await request.body()
    secret = stripe_billing.STRIPE_WEBHOOK_SECRET
    if not secret or not stripe_signature:
        track_webhook_failure(db, "unknown", "unknown", "Webhook secret or signature missing")
        raise ApiError("WEBHOOK_SIGNATURE_INVALID", message="Webhook secret or signature missing")
    try:
        stripe.Webhook.construct_event(payload, stripe_signature, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        track_webhook_failure(db, "unknown", "unknown", f"Invalid signature: {e}")
        raise ApiError("WEBHOOK_SIGNATURE_INVALID", message=f"Invalid signature: {e}")

    event = json.loads(payload)
    event_id = event.get("id") or ""
    event_type = event.get("type") or ""
    if db.query(StripeWebhookEvent).filter(StripeWebhookEvent.id == event_id).first():
        _LOG.info("stripe_webhook_duplicate event_id=%s type=%s", event_id, event_type)
        return {"received": True, "duplicate": True}

    try:
        handled = stripe_billing.handle_stripe_event(db, event, stripe_billing.get_stripe())
        db.add(StripeWebhookEvent(id=event_id, type=event_type))
        db.commit()
    except Exception as e:
        db.rollback()
        track_webhook_failure(db, event_type, event_id, str(e))
        raise ApiError("INTERNAL_ERROR", message="Webhook handler failed", details={"event_id": event_id})
    _LOG.info("stripe_webhook event_id=%s type=%s handled=%s", event_id, event_type, handled)
    return {"received": True, "handled": handled}
