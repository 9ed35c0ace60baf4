"""Stripe webhook endpoint.

WHAT: Receives Stripe subscription and invoice webhooks
WHY: Local subscription state (user plan, business status) follows Stripe

Flow:
    1. Verify Stripe-Signature over the raw body (400 on failure, no journal)
    2. Decode into the typed event union (400 on a malformed payload)
    3. Hand off to StripeWebhookProcessor (500 on any processing error)
    4. Acknowledge with 200 {"received": true, ...}

Stripe redelivers anything that is not a 2xx, which is the retry mechanism
for processing failures.

REFERENCES:
    - https://docs.stripe.com/webhooks
    - waveorder/services/billing/webhook_processor.py
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_event_authenticator, get_webhook_processor
from ..services.billing import (
    EventAuthenticator,
    StripeWebhookProcessor,
    WebhookAuthenticationError,
    decode_event,
)
from ..telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/api/webhooks",
    tags=["Webhooks"],
)


@router.post(
    "/stripe",
    response_model=schemas.WebhookResponse,
    summary="Stripe webhook handler",
    description="""
    Receives and processes Stripe webhook events.

    Handled events:
        - checkout.session.completed: Create the local subscription from the checkout
        - customer.subscription.created / updated / deleted / paused / resumed
        - customer.subscription.trial_will_end: Trial reminder email
        - invoice.payment_succeeded / invoice.payment_failed: Ledger + renewal/dunning

    Security:
        - Stripe-Signature header verified against STRIPE_WEBHOOK_SECRET
        - Deliveries older than STRIPE_WEBHOOK_TOLERANCE seconds are rejected

    Testing:
        - stripe listen --forward-to localhost:8000/api/webhooks/stripe
        - stripe trigger customer.subscription.updated
    """,
)
async def handle_stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    authenticator: EventAuthenticator = Depends(get_event_authenticator),
    processor: StripeWebhookProcessor = Depends(get_webhook_processor),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """Verify, journal and process one Stripe webhook delivery."""
    # Raw bytes: any re-serialization breaks the signature
    body = await request.body()

    if not authenticator.secret:
        logger.error("[STRIPE_WEBHOOK] STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    try:
        payload = authenticator.verify(body, stripe_signature)
    except WebhookAuthenticationError as e:
        logger.warning(f"[STRIPE_WEBHOOK] Signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook signature verification failed",
        )

    try:
        event = decode_event(payload)
    except ValidationError as e:
        logger.warning(f"[STRIPE_WEBHOOK] Invalid {payload.get('type')} payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload",
        )

    logger.info(f"[STRIPE_WEBHOOK] Received {event.type} ({event.id})")

    try:
        action = await processor.process(db, event, payload)
    except Exception as e:
        capture_exception(e, extra={"event_type": event.type, "event_id": event.id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook handler failed",
        )

    return schemas.WebhookResponse(event_type=event.type, action=action)
