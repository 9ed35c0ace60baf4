"""
Stripe Billing Services Package.

WHAT:
    The subscription webhook reconciliation engine: verifies Stripe webhooks,
    journals them, and applies subscription lifecycle events to users,
    businesses and the local subscription mirror.

ARCHITECTURE:
    event_authenticator -> event_journal -> state_reconciler (atomic)
        -> conflict_resolver -> side_effects -> event_journal

MODULES:
    - event_authenticator: Stripe-Signature verification and event decoding
    - event_journal: StripeWebhookEvent audit rows
    - plan_catalog: price id -> plan tier, billing interval, tier ordering
    - entity_resolver: reconcile_subscription upsert and entity lookups
    - state_reconciler: one atomic transition per subscription event
    - ledger: best-effort StripeTransaction rows for invoices
    - conflict_resolver: cancels superseded Stripe subscriptions
    - side_effects: best-effort emails and audit rows
    - webhook_processor: the pipeline tying the above together

REFERENCES:
    - waveorder/routers/stripe_webhooks.py
    - waveorder/models.py (Subscription, User, Business, StripeTransaction)
"""

from .event_authenticator import EventAuthenticator, WebhookAuthenticationError, decode_event
from .plan_catalog import PLAN_HIERARCHY, PlanCatalog, classify_plan_change
from .webhook_processor import StripeWebhookProcessor

__all__ = [
    "EventAuthenticator",
    "WebhookAuthenticationError",
    "decode_event",
    "PLAN_HIERARCHY",
    "PlanCatalog",
    "classify_plan_change",
    "StripeWebhookProcessor",
]
