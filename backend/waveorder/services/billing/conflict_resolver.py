"""Dual-subscription cleanup.

WHAT: Cancels the Stripe subscription a user just moved away from
WHY: A plan switch through a new checkout creates a second Stripe
     subscription; the old one keeps billing until someone cancels it

Runs after the local row already points at the new subscription, so a failure
here only leaves a stale Stripe subscription for manual cleanup.
"""

import logging
from typing import Optional

from .side_effects import attempt

logger = logging.getLogger(__name__)


class ConflictResolver:
    def __init__(self, gateway):
        self._gateway = gateway

    async def cancel_superseded(self, old_stripe_id: Optional[str], new_stripe_id: str) -> bool:
        """Cancel `old_stripe_id` immediately. Returns True when Stripe accepted it."""
        if not old_stripe_id or old_stripe_id == new_stripe_id:
            return False

        logger.info(f"[BILLING] Canceling superseded subscription {old_stripe_id} (replaced by {new_stripe_id})")

        async def _cancel() -> bool:
            await self._gateway.cancel_subscription_now(old_stripe_id)
            return True

        canceled = await attempt(
            _cancel,
            f"Failed to cancel superseded subscription {old_stripe_id}; cancel it manually in Stripe",
            default=False,
        )
        return canceled
