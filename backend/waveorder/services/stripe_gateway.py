"""Stripe API gateway.

WHAT:
    The three outbound Stripe calls the webhook engine makes:
    retrieve a subscription, cancel one immediately, open a billing portal
    session.

WHY:
    The API key is passed per call instead of set on the `stripe` module, so
    the gateway can be constructed from settings and swapped for a fake in
    tests.

REFERENCES:
    - https://docs.stripe.com/api/subscriptions/retrieve
    - https://docs.stripe.com/api/subscriptions/cancel
    - https://docs.stripe.com/api/customer_portal/sessions/create
"""

import logging
from typing import Any, Dict

import stripe

logger = logging.getLogger(__name__)


class StripeGateway:
    """Async wrapper over the Stripe SDK calls used by billing."""

    def __init__(self, api_key: str):
        self.api_key = api_key

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Fetch the current subscription object as a plain dict."""
        subscription = await stripe.Subscription.retrieve_async(
            subscription_id,
            api_key=self.api_key,
        )
        return subscription.to_dict()

    async def cancel_subscription_now(self, subscription_id: str) -> None:
        """Cancel immediately (not at period end)."""
        await stripe.Subscription.cancel_async(subscription_id, api_key=self.api_key)
        logger.info(f"[STRIPE] Canceled subscription {subscription_id} immediately")

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a customer portal session and return its URL."""
        session = await stripe.billing_portal.Session.create_async(
            customer=customer_id,
            return_url=return_url,
            api_key=self.api_key,
        )
        return session.url
