"""Stripe webhook processing pipeline.

WHAT:
    Runs one verified, decoded event through the billing engine:

        journal (processed=False)
          -> dispatch by event type
               -> state transition (atomic)
               -> superseded subscription cleanup (best-effort)
               -> emails + audit row (best-effort)
          -> journal (processed=True, or error message + re-raise)

WHY:
    Only this dispatch may let an exception escape. Everything after a
    committed transition is best-effort, everything before it propagates so
    the endpoint answers 500 and Stripe redelivers.

WEBHOOK EVENTS HANDLED:
    - checkout.session.completed: fetch the subscription, run "created"
    - customer.subscription.created / updated / deleted / paused / resumed
    - customer.subscription.trial_will_end: reminder email only
    - invoice.payment_succeeded: ledger row; cycle renewals re-fetch the
      subscription, run "updated" and send a renewal email when it is still
      active or trialing
    - invoice.payment_failed: ledger row and a dunning email

    Subscription events for a subscription the user already switched away
    from answer "stale" and change nothing.

REFERENCES:
    - https://docs.stripe.com/billing/subscriptions/webhooks
    - waveorder/routers/stripe_webhooks.py (caller)
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.orm import Session

from ...models import TransactionStatusEnum
from ...schemas import (
    CheckoutSessionEvent,
    InvoiceEvent,
    StripeEvent,
    StripeSubscription,
    SubscriptionEvent,
    UnhandledEvent,
    to_datetime,
)
from ..notification_service import SubscriptionNotificationService
from ..stripe_gateway import StripeGateway
from . import event_journal
from .conflict_resolver import ConflictResolver
from .entity_resolver import find_user_by_customer
from .ledger import LedgerRecorder
from .plan_catalog import PlanCatalog
from .side_effects import NotificationTarget, SideEffectDispatcher
from .state_reconciler import SubscriptionStateReconciler, TransitionOutcome

logger = logging.getLogger(__name__)

# Transitions that get a subscription_changed audit row
_AUDITED_EVENTS = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
})

# Subscription statuses a paid cycle invoice counts as a renewal for
_RENEWED_STATUSES = frozenset({"active", "trialing"})


class StripeWebhookProcessor:
    """Processes decoded Stripe events against the database.

    Usage:
        processor = StripeWebhookProcessor.from_settings(get_settings())
        action = await processor.process(db, event, raw_payload)
    """

    def __init__(
        self,
        *,
        gateway,
        notifier,
        catalog: PlanCatalog,
        frontend_url: str,
        product_source: str,
        grace_period_days: int = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.gateway = gateway
        self.catalog = catalog
        self.reconciler = SubscriptionStateReconciler(catalog, grace_period_days=grace_period_days, clock=clock)
        self.conflicts = ConflictResolver(gateway)
        self.ledger = LedgerRecorder(catalog, gateway, product_source)
        self.side_effects = SideEffectDispatcher(notifier, gateway, frontend_url)

    @classmethod
    def from_settings(cls, settings) -> "StripeWebhookProcessor":
        return cls(
            gateway=StripeGateway(settings.STRIPE_SECRET_KEY),
            notifier=SubscriptionNotificationService.from_settings(settings),
            catalog=PlanCatalog.from_settings(settings),
            frontend_url=settings.FRONTEND_URL,
            product_source=settings.STRIPE_PRODUCT_SOURCE,
            grace_period_days=settings.GRACE_PERIOD_DAYS,
        )

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def process(
        self,
        db: Session,
        event: Union[StripeEvent, UnhandledEvent],
        payload: Dict[str, Any],
    ) -> str:
        """Journal and handle one event. Returns the action taken.

        Raises:
            Exception: whatever the handler raised, after the journal entry
                has been marked with it
        """
        entry = event_journal.open_entry(
            db,
            event_id=event.id,
            event_type=event.type,
            stripe_object_id=_object_id(event),
            payload=payload,
        )

        try:
            action = await self._dispatch(db, event)
        except Exception as e:
            logger.error(f"[STRIPE_WEBHOOK] Error processing {event.type} ({event.id}): {e}", exc_info=True)
            event_journal.mark_failed(db, entry, e)
            raise

        event_journal.mark_processed(db, entry)
        logger.info(f"[STRIPE_WEBHOOK] {event.type} ({event.id}) -> {action}")
        return action

    async def _dispatch(self, db: Session, event: Union[StripeEvent, UnhandledEvent]) -> str:
        if isinstance(event, UnhandledEvent):
            logger.warning(f"[STRIPE_WEBHOOK] Unhandled event type {event.type} ({event.id}), acknowledging")
            return "ignored"

        if isinstance(event, CheckoutSessionEvent):
            return await self._handle_checkout_completed(db, event)
        if isinstance(event, InvoiceEvent):
            if event.type == "invoice.payment_succeeded":
                return await self._handle_payment_succeeded(db, event)
            return await self._handle_payment_failed(db, event)

        sub = event.object
        if event.type == "customer.subscription.created":
            outcome = self.reconciler.apply_created(db, sub)
        elif event.type == "customer.subscription.updated":
            outcome = self.reconciler.apply_updated(db, sub)
        elif event.type == "customer.subscription.deleted":
            outcome = self.reconciler.apply_deleted(db, sub)
        elif event.type == "customer.subscription.paused":
            outcome = self.reconciler.apply_paused(db, sub)
        elif event.type == "customer.subscription.resumed":
            outcome = self.reconciler.apply_resumed(db, sub)
        else:
            return await self._handle_trial_will_end(db, event)

        await self._after_transition(db, event.type, outcome)
        return outcome.action

    # =========================================================================
    # POST-COMMIT
    # =========================================================================

    async def _after_transition(
        self,
        db: Session,
        event_type: str,
        outcome: TransitionOutcome,
        notify: bool = True,
    ) -> None:
        if outcome.replaced_stripe_id:
            await self.conflicts.cancel_superseded(outcome.replaced_stripe_id, outcome.stripe_subscription_id)

        if notify and outcome.change_type and outcome.recipient:
            amount = None
            if outcome.new_plan and outcome.change_type not in ("canceled", "trial_expired"):
                amount = self.catalog.amount_for(outcome.new_plan, outcome.billing_interval)
            await self.side_effects.notify_subscription_change(
                outcome.recipient,
                change_type=outcome.change_type,
                new_plan=outcome.new_plan,
                old_plan=outcome.old_plan,
                billing_interval=outcome.billing_interval,
                amount=amount,
                next_billing_date=outcome.next_billing_date,
            )

        if event_type in _AUDITED_EVENTS and outcome.action == "processed":
            self.side_effects.record_subscription_change(
                db,
                event_type=event_type,
                stripe_subscription_id=outcome.stripe_subscription_id,
                old_plan=outcome.old_plan,
                new_plan=outcome.new_plan,
                change_type=outcome.change_type,
                status=outcome.status,
            )

    # =========================================================================
    # EVENT HANDLERS
    # =========================================================================

    async def _fetch_subscription(self, subscription_id: str) -> StripeSubscription:
        return StripeSubscription.model_validate(await self.gateway.retrieve_subscription(subscription_id))

    async def _handle_checkout_completed(self, db: Session, event: CheckoutSessionEvent) -> str:
        session = event.object
        if session.mode != "subscription" or not session.subscription:
            logger.info(f"[STRIPE_WEBHOOK] Checkout {session.id} has no subscription, ignoring")
            return "ignored"

        sub = await self._fetch_subscription(session.subscription)
        outcome = self.reconciler.apply_created(db, sub)
        await self._after_transition(db, "customer.subscription.created", outcome)
        return outcome.action

    async def _handle_trial_will_end(self, db: Session, event: SubscriptionEvent) -> str:
        sub = event.object
        user = find_user_by_customer(db, sub.customer)
        if user is None:
            logger.warning(f"[STRIPE_WEBHOOK] trial_will_end for unknown customer {sub.customer}, skipping reminder")
            return "not_found"

        target = NotificationTarget.from_user(user)
        plan = self.catalog.resolve_plan(sub.price_id, default=user.plan)
        update_payment_url = await self.side_effects.billing_portal_url(target.customer_id)
        await self.side_effects.notify_subscription_change(
            target,
            change_type="trial_ending",
            new_plan=plan,
            old_plan=user.plan,
            next_billing_date=sub.trial_ends_at,
            update_payment_url=update_payment_url,
        )
        return "notified"

    async def _handle_payment_succeeded(self, db: Session, event: InvoiceEvent) -> str:
        invoice = event.object
        await self.ledger.record_invoice(db, invoice, TransactionStatusEnum.paid)

        if invoice.billing_reason != "subscription_cycle" or not invoice.subscription:
            return "recorded"

        # The fetched subscription carries the new period bounds
        sub = await self._fetch_subscription(invoice.subscription)
        outcome = self.reconciler.apply_updated(db, sub)
        await self._after_transition(db, "customer.subscription.updated", outcome, notify=False)

        if outcome.action != "processed" or sub.status not in _RENEWED_STATUSES:
            logger.info(f"[STRIPE_WEBHOOK] Invoice {invoice.id} paid but {sub.id} is {sub.status}, no renewal email")
            return "recorded"

        if outcome.recipient and outcome.new_plan:
            await self.side_effects.notify_subscription_change(
                outcome.recipient,
                change_type="renewed",
                new_plan=outcome.new_plan,
                old_plan=outcome.old_plan,
                billing_interval=outcome.billing_interval,
                amount=invoice.amount_paid / 100,
                next_billing_date=outcome.next_billing_date,
            )
        return "renewed"

    async def _handle_payment_failed(self, db: Session, event: InvoiceEvent) -> str:
        invoice = event.object
        await self.ledger.record_invoice(db, invoice, TransactionStatusEnum.failed)

        user = find_user_by_customer(db, invoice.customer)
        if user is None:
            logger.warning(f"[STRIPE_WEBHOOK] Payment failed for unknown customer {invoice.customer}")
            return "recorded"

        await self.side_effects.notify_payment_failed(
            NotificationTarget.from_user(user),
            amount=invoice.amount_due / 100,
            next_retry_date=to_datetime(invoice.next_payment_attempt),
        )
        return "notified"


def _object_id(event: Union[StripeEvent, UnhandledEvent]) -> Optional[str]:
    if isinstance(event, UnhandledEvent):
        return event.object_id
    return event.object.id
