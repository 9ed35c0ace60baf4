"""Entity resolution: Stripe ids to local User / Business / Subscription rows.

WHAT:
    - reconcile_subscription(): the one upsert every transition goes through
    - lookups for users by Stripe customer and businesses by owner

WHY:
    The checkout-success page and the customer.subscription.created webhook
    race to create the same Subscription row, and Stripe does not order its
    deliveries. A lookup-then-upsert keyed on the unique Stripe subscription
    id makes every delivery converge on one row.

UPSERT SEMANTICS (reconcile_subscription):
    1. Row exists for the Stripe id: apply fields, re-point the owner's
       subscription_id at it if a prior write left it dangling.
    2. Owner already has a different Subscription row (plan switch through a
       new checkout): reuse that row in place and report the Stripe id it
       used to carry so the superseded subscription can be canceled.
    3. Owner has no Subscription: create one and link it.

    Before step 2 the incoming subscription is checked against the owner's
    current row (see is_stale). A late delivery for a subscription the row
    already moved away from must not move it back.

REFERENCES:
    - waveorder/services/billing/state_reconciler.py (caller)
    - waveorder/services/billing/conflict_resolver.py (consumes replaced_stripe_id)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from ...models import Business, BusinessUser, PlanEnum, Subscription, User

logger = logging.getLogger(__name__)

# Stripe statuses a subscription never leaves
TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})


class OrphanedCustomerError(LookupError):
    """No local user carries this Stripe customer id."""

    def __init__(self, customer_id: str):
        super().__init__(f"No user found for Stripe customer {customer_id}")
        self.customer_id = customer_id


@dataclass
class SubscriptionFields:
    """Absolute values to write onto a Subscription row."""

    status: str
    plan: PlanEnum
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    stripe_created_at: Optional[datetime] = None


@dataclass
class ReconcileResult:
    subscription: Subscription
    owner: User
    created: bool = False
    replaced_stripe_id: Optional[str] = None


class StaleSubscriptionError(Exception):
    """A delivery for a subscription the owner's row has already replaced."""

    def __init__(self, stripe_subscription_id: str, current_stripe_id: str, reason: str):
        super().__init__(
            f"Subscription {stripe_subscription_id} is stale ({reason}); "
            f"user is on {current_stripe_id}"
        )
        self.stripe_subscription_id = stripe_subscription_id
        self.current_stripe_id = current_stripe_id
        self.reason = reason


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def find_user_by_customer(db: Session, customer_id: Optional[str]) -> Optional[User]:
    if not customer_id:
        return None
    return db.query(User).filter(User.stripe_customer_id == customer_id).first()


def require_user_by_customer(db: Session, customer_id: Optional[str]) -> User:
    """Like find_user_by_customer but raises OrphanedCustomerError."""
    user = find_user_by_customer(db, customer_id)
    if user is None:
        logger.error(f"[BILLING] No user found for Stripe customer {customer_id}")
        raise OrphanedCustomerError(customer_id or "<missing>")
    return user


def find_subscription(db: Session, stripe_subscription_id: str) -> Optional[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.stripe_id == stripe_subscription_id)
        .first()
    )


def linked_users(db: Session, subscription: Subscription) -> List[User]:
    """Every user billed through this subscription (usually just the owner)."""
    return (
        db.query(User)
        .filter(User.subscription_id == subscription.id)
        .order_by(User.created_at)
        .all()
    )


def linked_businesses(db: Session, users: Iterable[User]) -> List[Business]:
    """Businesses any of these users belong to, deduplicated."""
    user_ids = [u.id for u in users]
    if not user_ids:
        return []
    return (
        db.query(Business)
        .join(BusinessUser, BusinessUser.business_id == Business.id)
        .filter(BusinessUser.user_id.in_(user_ids))
        .distinct()
        .order_by(Business.created_at)
        .all()
    )


def stale_reason(
    owner: User,
    stripe_subscription_id: str,
    status: str,
    stripe_created_at: Optional[datetime] = None,
) -> Optional[str]:
    """Why a subscription must not take over the owner's row, or None.

    Only meaningful when no row exists for `stripe_subscription_id` yet and
    the owner already has a row for a different Stripe subscription.
    """
    current = owner.subscription
    if current is None or current.stripe_id == stripe_subscription_id:
        return None
    if stripe_subscription_id in (current.superseded_stripe_ids or []):
        return "superseded"
    if status in TERMINAL_STATUSES:
        return f"terminal status {status}"
    current_created = _as_utc(current.stripe_created_at)
    incoming_created = _as_utc(stripe_created_at)
    if current_created and incoming_created and incoming_created < current_created:
        return "older than current subscription"
    return None


def _apply_fields(subscription: Subscription, fields: SubscriptionFields) -> None:
    subscription.status = fields.status
    subscription.plan = fields.plan
    subscription.price_id = fields.price_id
    subscription.current_period_start = fields.current_period_start
    subscription.current_period_end = fields.current_period_end
    subscription.cancel_at_period_end = fields.cancel_at_period_end
    if fields.canceled_at is not None or fields.status != "canceled":
        subscription.canceled_at = fields.canceled_at
    if fields.stripe_created_at is not None:
        subscription.stripe_created_at = fields.stripe_created_at


def reconcile_subscription(
    db: Session,
    stripe_subscription_id: str,
    customer_id: Optional[str],
    fields: SubscriptionFields,
) -> ReconcileResult:
    """Locate or create the Subscription row for a Stripe subscription.

    Writes are flushed, not committed; the caller owns the transaction.

    Raises:
        OrphanedCustomerError: no user carries `customer_id`
        StaleSubscriptionError: the owner's row already moved past this
            subscription; nothing was written
    """
    owner = require_user_by_customer(db, customer_id)

    subscription = find_subscription(db, stripe_subscription_id)
    if subscription is not None:
        _apply_fields(subscription, fields)
        if owner.subscription_id != subscription.id:
            logger.info(
                f"[BILLING] Re-linking user {owner.id} to subscription {stripe_subscription_id}"
            )
            owner.subscription = subscription
        db.flush()
        return ReconcileResult(subscription=subscription, owner=owner)

    current = owner.subscription
    if current is not None:
        reason = stale_reason(owner, stripe_subscription_id, fields.status, fields.stripe_created_at)
        if reason:
            raise StaleSubscriptionError(stripe_subscription_id, current.stripe_id, reason)

        replaced_stripe_id = current.stripe_id
        logger.info(
            f"[BILLING] User {owner.id} moving from {current.stripe_id} to {stripe_subscription_id}"
        )
        # Reassigned, not appended, so the JSON column is flagged dirty
        current.superseded_stripe_ids = list(current.superseded_stripe_ids or []) + [replaced_stripe_id]
        current.stripe_id = stripe_subscription_id
        current.stripe_created_at = None
        _apply_fields(current, fields)
        db.flush()
        return ReconcileResult(
            subscription=current,
            owner=owner,
            replaced_stripe_id=replaced_stripe_id,
        )

    subscription = Subscription(stripe_id=stripe_subscription_id)
    _apply_fields(subscription, fields)
    db.add(subscription)
    owner.subscription = subscription
    db.flush()
    logger.info(f"[BILLING] Created subscription {stripe_subscription_id} for user {owner.id}")
    return ReconcileResult(subscription=subscription, owner=owner, created=True)
