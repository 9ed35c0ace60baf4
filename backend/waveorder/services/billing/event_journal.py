"""Webhook event journal.

WHAT: One StripeWebhookEvent row per delivery, written before processing and
      closed with the outcome afterwards
WHY: Audit trail for support and for replaying failed deliveries

The journal is not the idempotency mechanism: Stripe redelivers on any
non-2xx and every redelivery gets a fresh row. Duplicate protection lives in
the subscription upsert and the ledger's invoice-id dedupe.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ...models import StripeWebhookEvent

logger = logging.getLogger(__name__)


def open_entry(
    db: Session,
    *,
    event_id: Optional[str],
    event_type: str,
    stripe_object_id: Optional[str],
    payload: Dict[str, Any],
) -> StripeWebhookEvent:
    """Record an accepted event with processed=False and commit it."""
    entry = StripeWebhookEvent(
        event_id=event_id,
        event_type=event_type,
        stripe_object_id=stripe_object_id,
        payload_json=payload,
        processed=False,
    )
    db.add(entry)
    db.commit()
    logger.debug(f"[STRIPE_WEBHOOK] Journaled {event_type} ({event_id}) as {entry.id}")
    return entry


def mark_processed(db: Session, entry: StripeWebhookEvent) -> None:
    entry.processed = True
    entry.error_message = None
    entry.processed_at = datetime.utcnow()
    db.commit()


def mark_failed(db: Session, entry: StripeWebhookEvent, error: BaseException) -> None:
    """Attach the failure to the entry, leaving processed=False.

    The session may hold a half-applied transition, so it is rolled back
    before the error is written.
    """
    db.rollback()
    entry.processed = False
    entry.error_message = f"{type(error).__name__}: {error}"
    db.commit()
    logger.info(f"[STRIPE_WEBHOOK] Journal entry {entry.id} marked failed")
