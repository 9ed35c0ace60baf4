"""Subscription state machine.

WHAT:
    One transition per Stripe subscription event. Each transition upserts the
    Subscription row, updates every linked User and fans the result out to
    every Business those users belong to, all in one atomic unit.

WHY:
    Stripe delivers out of order and more than once. Transitions write
    absolute values taken from the Stripe object, so replaying one converges
    on the same state.

TRANSITIONS:
    created   -> plan from price, businesses ACTIVE, trial kept while trialing
    updated   -> mirror status, businesses ACTIVE only when status is active
    deleted   -> canceled, users and businesses back to STARTER / CANCELLED
    paused    -> STARTER with a grace window, businesses TRIAL_EXPIRED
    resumed   -> plan from price (PRO when unknown), businesses ACTIVE

    Each returns a TransitionOutcome describing what changed so the processor
    can run conflict cleanup and notifications after commit. created,
    updated, paused and resumed return action "stale" without writing when
    the subscription was already replaced on the owner's row.

REFERENCES:
    - waveorder/services/billing/entity_resolver.py (reconcile_subscription)
    - waveorder/services/billing/webhook_processor.py (caller)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from ...database import atomic
from ...models import Business, BusinessStatusEnum, PlanEnum
from ...schemas import StripeSubscription
from .entity_resolver import (
    TERMINAL_STATUSES,
    SubscriptionFields,
    find_subscription,
    find_user_by_customer,
    linked_businesses,
    linked_users,
    reconcile_subscription,
    require_user_by_customer,
    stale_reason,
)
from .plan_catalog import PlanCatalog, classify_plan_change
from .side_effects import NotificationTarget

logger = logging.getLogger(__name__)


@dataclass
class TransitionOutcome:
    """What a transition did, for post-commit side effects."""

    action: str
    stripe_subscription_id: Optional[str] = None
    status: Optional[str] = None
    old_plan: Optional[PlanEnum] = None
    new_plan: Optional[PlanEnum] = None
    change_type: Optional[str] = None
    recipient: Optional[NotificationTarget] = None
    replaced_stripe_id: Optional[str] = None
    billing_interval: Optional[str] = None
    next_billing_date: Optional[datetime] = None


def grace_period_end(now: datetime, days: int = 7) -> datetime:
    """Deadline of the post-trial grace window."""
    return now + timedelta(days=days)


def _sync_business(business: Business, **values) -> None:
    for key, value in values.items():
        setattr(business, key, value)


def _fan_out(businesses: Iterable[Business], **values) -> None:
    for business in businesses:
        _sync_business(business, **values)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStateReconciler:
    """Applies subscription events to local state.

    Usage:
        reconciler = SubscriptionStateReconciler(catalog, grace_period_days=7)
        outcome = reconciler.apply_created(db, stripe_subscription)
    """

    def __init__(
        self,
        catalog: PlanCatalog,
        grace_period_days: int = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._catalog = catalog
        self.grace_period_days = grace_period_days
        self._clock = clock or _utc_now

    def now(self) -> datetime:
        return self._clock()

    def _fields(self, sub: StripeSubscription, plan: PlanEnum, **overrides) -> SubscriptionFields:
        values = dict(
            status=sub.status,
            plan=plan,
            price_id=sub.price_id,
            current_period_start=sub.period_start,
            current_period_end=sub.period_end,
            cancel_at_period_end=sub.cancel_at_period_end,
            canceled_at=sub.canceled_at_datetime,
            stripe_created_at=sub.created_at,
        )
        values.update(overrides)
        return SubscriptionFields(**values)

    def _stale_outcome(self, db: Session, sub: StripeSubscription, status: str) -> Optional[TransitionOutcome]:
        """A "stale" no-op outcome when `sub` was already replaced for its owner.

        Late deliveries for a superseded subscription would otherwise take
        the owner's row back from the subscription that replaced it.
        """
        if find_subscription(db, sub.id) is not None:
            return None
        owner = find_user_by_customer(db, sub.customer)
        if owner is None:
            return None
        reason = stale_reason(owner, sub.id, status, sub.created_at)
        if reason is None:
            return None
        logger.warning(
            f"[BILLING] Ignoring stale event for {sub.id} ({reason}); "
            f"user {owner.id} is on {owner.subscription.stripe_id}"
        )
        return TransitionOutcome(action="stale", stripe_subscription_id=sub.id, status=sub.status)

    # =========================================================================
    # CREATED
    # =========================================================================

    def apply_created(self, db: Session, sub: StripeSubscription) -> TransitionOutcome:
        """Handle customer.subscription.created (and completed checkouts).

        A subscription that starts in `trialing` sends no email: the trial
        start flow already welcomed the user.
        """
        stale = self._stale_outcome(db, sub, sub.status)
        if stale is not None:
            return stale

        plan = self._catalog.resolve_plan(sub.price_id)
        trialing = sub.status == "trialing"

        with atomic(db):
            owner = require_user_by_customer(db, sub.customer)
            old_plan = owner.plan
            was_on_trial = owner.trial_ends_at is not None

            result = reconcile_subscription(db, sub.id, sub.customer, self._fields(sub, plan))
            users = linked_users(db, result.subscription)
            businesses = linked_businesses(db, users)

            for user in users:
                user.plan = plan
                if trialing:
                    if user.trial_ends_at is None:
                        user.trial_ends_at = sub.trial_ends_at
                else:
                    user.trial_ends_at = None
                    user.grace_ends_at = None

            values = dict(subscription_plan=plan, subscription_status=BusinessStatusEnum.active)
            if not trialing:
                values.update(trial_ends_at=None, grace_ends_at=None)
            _fan_out(businesses, **values)

            recipient = NotificationTarget.from_user(owner)

        if trialing:
            change_type = None
        elif was_on_trial:
            change_type = "trial_converted"
        else:
            change_type = classify_plan_change(old_plan, plan)
            if change_type is None and result.created:
                change_type = "created"

        logger.info(
            f"[BILLING] subscription.created {sub.id}: {old_plan.value if old_plan else None} -> {plan.value} "
            f"({sub.status}, {len(businesses)} businesses)"
        )
        return TransitionOutcome(
            action="processed",
            stripe_subscription_id=sub.id,
            status=sub.status,
            old_plan=old_plan,
            new_plan=plan,
            change_type=change_type,
            recipient=recipient,
            replaced_stripe_id=result.replaced_stripe_id,
            billing_interval=self._catalog.billing_interval(sub.price_id),
            next_billing_date=sub.period_end,
        )

    # =========================================================================
    # UPDATED
    # =========================================================================

    def apply_updated(self, db: Session, sub: StripeSubscription) -> TransitionOutcome:
        """Handle customer.subscription.updated.

        Creates the row when the update outruns the created event. A paused
        status is handled as a pause so the two events cannot disagree.
        """
        if sub.status == "paused":
            return self.apply_paused(db, sub)

        stale = self._stale_outcome(db, sub, sub.status)
        if stale is not None:
            return stale

        plan = self._catalog.resolve_plan(sub.price_id)
        active = sub.status == "active"
        entitled_plan = PlanEnum.starter if sub.status in TERMINAL_STATUSES else plan

        with atomic(db):
            owner = require_user_by_customer(db, sub.customer)
            old_plan = owner.plan
            was_on_trial = owner.trial_ends_at is not None
            existing = find_subscription(db, sub.id)
            cancel_was_scheduled = bool(existing is not None and existing.cancel_at_period_end)

            result = reconcile_subscription(db, sub.id, sub.customer, self._fields(sub, plan))
            users = linked_users(db, result.subscription)
            businesses = linked_businesses(db, users)

            for user in users:
                user.plan = entitled_plan
                if active:
                    user.trial_ends_at = None
                    user.grace_ends_at = None

            values = dict(
                subscription_plan=entitled_plan,
                subscription_status=BusinessStatusEnum.active if active else BusinessStatusEnum.inactive,
            )
            if active:
                values.update(trial_ends_at=None, grace_ends_at=None)
            _fan_out(businesses, **values)

            recipient = NotificationTarget.from_user(owner)

        if sub.cancel_at_period_end and not cancel_was_scheduled:
            change_type = "canceled"
        elif was_on_trial and active:
            change_type = "trial_converted"
        else:
            change_type = classify_plan_change(old_plan, entitled_plan)

        logger.info(
            f"[BILLING] subscription.updated {sub.id}: {old_plan.value if old_plan else None} -> "
            f"{entitled_plan.value} ({sub.status}, {len(businesses)} businesses)"
        )
        return TransitionOutcome(
            action="processed",
            stripe_subscription_id=sub.id,
            status=sub.status,
            old_plan=old_plan,
            new_plan=entitled_plan,
            change_type=change_type,
            recipient=recipient,
            replaced_stripe_id=result.replaced_stripe_id,
            billing_interval=self._catalog.billing_interval(sub.price_id),
            next_billing_date=sub.period_end,
        )

    # =========================================================================
    # DELETED
    # =========================================================================

    def apply_deleted(self, db: Session, sub: StripeSubscription) -> TransitionOutcome:
        """Handle customer.subscription.deleted.

        Unknown subscriptions are a no-op: a superseded subscription that was
        canceled during a plan switch no longer has a row of its own.
        """
        with atomic(db):
            subscription = find_subscription(db, sub.id)
            if subscription is None:
                logger.warning(f"[BILLING] subscription.deleted for unknown subscription {sub.id}, ignoring")
                return TransitionOutcome(action="not_found", stripe_subscription_id=sub.id, status=sub.status)

            already_canceled = subscription.status == "canceled"
            # The user was already told when cancel_at_period_end was set
            already_notified = already_canceled or subscription.cancel_at_period_end
            old_plan = subscription.plan

            subscription.status = "canceled"
            if not already_canceled or subscription.canceled_at is None:
                subscription.canceled_at = self.now()

            users = linked_users(db, subscription)
            businesses = linked_businesses(db, users)
            for user in users:
                user.plan = PlanEnum.starter
                user.trial_ends_at = None
                user.grace_ends_at = None
            _fan_out(
                businesses,
                subscription_plan=PlanEnum.starter,
                subscription_status=BusinessStatusEnum.cancelled,
                trial_ends_at=None,
                grace_ends_at=None,
            )

            owner = find_user_by_customer(db, sub.customer) or (users[0] if users else None)
            recipient = NotificationTarget.from_user(owner) if owner else None
            period_end = subscription.current_period_end

        logger.info(f"[BILLING] subscription.deleted {sub.id}: {len(users)} users, {len(businesses)} businesses -> STARTER")
        return TransitionOutcome(
            action="processed",
            stripe_subscription_id=sub.id,
            status="canceled",
            old_plan=old_plan,
            new_plan=PlanEnum.starter,
            change_type=None if already_notified else "canceled",
            recipient=recipient,
            next_billing_date=period_end,
        )

    # =========================================================================
    # PAUSED
    # =========================================================================

    def apply_paused(self, db: Session, sub: StripeSubscription) -> TransitionOutcome:
        """Handle customer.subscription.paused (trial ended without a card).

        A redelivery for an already-paused subscription keeps the original
        grace deadline.
        """
        stale = self._stale_outcome(db, sub, "paused")
        if stale is not None:
            return stale

        plan = self._catalog.resolve_plan(sub.price_id)

        with atomic(db):
            owner = require_user_by_customer(db, sub.customer)
            old_plan = owner.plan
            existing = find_subscription(db, sub.id)
            already_paused = existing is not None and existing.status == "paused"
            if already_paused and owner.grace_ends_at is not None:
                grace_ends_at = owner.grace_ends_at
            else:
                grace_ends_at = grace_period_end(self.now(), self.grace_period_days)

            result = reconcile_subscription(db, sub.id, sub.customer, self._fields(sub, plan, status="paused"))
            users = linked_users(db, result.subscription)
            businesses = linked_businesses(db, users)

            for user in users:
                user.plan = PlanEnum.starter
                user.grace_ends_at = grace_ends_at
            _fan_out(
                businesses,
                subscription_plan=PlanEnum.starter,
                subscription_status=BusinessStatusEnum.trial_expired,
                grace_ends_at=grace_ends_at,
            )

            recipient = NotificationTarget.from_user(owner)

        logger.info(f"[BILLING] subscription.paused {sub.id}: grace until {grace_ends_at.isoformat()}")
        return TransitionOutcome(
            action="processed",
            stripe_subscription_id=sub.id,
            status="paused",
            old_plan=old_plan,
            new_plan=PlanEnum.starter,
            change_type=None if already_paused else "trial_expired",
            recipient=recipient,
            replaced_stripe_id=result.replaced_stripe_id,
        )

    # =========================================================================
    # RESUMED
    # =========================================================================

    def apply_resumed(self, db: Session, sub: StripeSubscription) -> TransitionOutcome:
        """Handle customer.subscription.resumed."""
        stale = self._stale_outcome(db, sub, sub.status)
        if stale is not None:
            return stale

        plan = self._catalog.plan_for_price(sub.price_id) or PlanEnum.pro

        with atomic(db):
            owner = require_user_by_customer(db, sub.customer)
            old_plan = owner.plan
            existing = find_subscription(db, sub.id)
            was_paused = existing is None or existing.status == "paused"

            fields = self._fields(sub, plan, cancel_at_period_end=False, canceled_at=None)
            result = reconcile_subscription(db, sub.id, sub.customer, fields)
            users = linked_users(db, result.subscription)
            businesses = linked_businesses(db, users)

            for user in users:
                user.plan = plan
                user.trial_ends_at = None
                user.grace_ends_at = None
            _fan_out(
                businesses,
                subscription_plan=plan,
                subscription_status=BusinessStatusEnum.active,
                trial_ends_at=None,
                grace_ends_at=None,
            )

            recipient = NotificationTarget.from_user(owner)

        logger.info(f"[BILLING] subscription.resumed {sub.id}: -> {plan.value}")
        return TransitionOutcome(
            action="processed",
            stripe_subscription_id=sub.id,
            status=sub.status,
            old_plan=old_plan,
            new_plan=plan,
            change_type="resumed" if was_paused else None,
            recipient=recipient,
            replaced_stripe_id=result.replaced_stripe_id,
            billing_interval=self._catalog.billing_interval(sub.price_id),
            next_billing_date=sub.period_end,
        )
