"""Plan catalog: Stripe price ids to local plan tiers.

WHAT:
    - Maps a Stripe price id to STARTER / PRO / BUSINESS
    - Tells monthly from annual (and free trial) prices
    - Orders tiers for upgrade/downgrade detection

WHY:
    The plan tier is derived from the subscription line item price only.
    Price ids differ between Stripe test and live mode, so they come from
    settings instead of being hardcoded.

REFERENCES:
    - waveorder/deps.py (STRIPE_<PLAN>_PRICE_ID settings)
    - waveorder/services/billing/state_reconciler.py (consumer)
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from ...models import PlanEnum


# Fixed total order used for email classification
PLAN_HIERARCHY: Dict[PlanEnum, int] = {
    PlanEnum.starter: 1,
    PlanEnum.pro: 2,
    PlanEnum.business: 3,
}


@dataclass(frozen=True)
class PlanPricing:
    """Prices (USD) and Stripe price ids for one plan tier."""

    plan: PlanEnum
    name: str
    monthly_price: int
    annual_price: int  # per month, billed yearly
    price_id: str = ""
    annual_price_id: str = ""
    free_price_id: str = ""


class PlanCatalog:
    """Lookup table over the configured plans.

    Usage:
        catalog = PlanCatalog.from_settings(get_settings())
        catalog.plan_for_price("price_123")      # PlanEnum.pro
        catalog.billing_interval("price_123")    # "monthly"
    """

    def __init__(self, plans: Iterable[PlanPricing]):
        self._plans: Dict[PlanEnum, PlanPricing] = {p.plan: p for p in plans}
        self._by_price: Dict[str, PlanEnum] = {}
        for pricing in self._plans.values():
            for price_id in (pricing.price_id, pricing.annual_price_id, pricing.free_price_id):
                # Unconfigured ids are empty strings and must never match
                if price_id:
                    self._by_price[price_id] = pricing.plan

    @classmethod
    def from_settings(cls, settings) -> "PlanCatalog":
        return cls([
            PlanPricing(
                plan=PlanEnum.starter,
                name="Starter",
                monthly_price=19,
                annual_price=16,
                price_id=settings.STRIPE_STARTER_PRICE_ID,
                annual_price_id=settings.STRIPE_STARTER_ANNUAL_PRICE_ID,
                free_price_id=settings.STRIPE_STARTER_FREE_PRICE_ID,
            ),
            PlanPricing(
                plan=PlanEnum.pro,
                name="Pro",
                monthly_price=39,
                annual_price=32,
                price_id=settings.STRIPE_PRO_PRICE_ID,
                annual_price_id=settings.STRIPE_PRO_ANNUAL_PRICE_ID,
                free_price_id=settings.STRIPE_PRO_FREE_PRICE_ID,
            ),
            PlanPricing(
                plan=PlanEnum.business,
                name="Business",
                monthly_price=79,
                annual_price=66,
                price_id=settings.STRIPE_BUSINESS_PRICE_ID,
                annual_price_id=settings.STRIPE_BUSINESS_ANNUAL_PRICE_ID,
                free_price_id=settings.STRIPE_BUSINESS_FREE_PRICE_ID,
            ),
        ])

    def owns_price(self, price_id: Optional[str]) -> bool:
        return bool(price_id) and price_id in self._by_price

    def plan_for_price(self, price_id: Optional[str]) -> Optional[PlanEnum]:
        """Return the plan a price id belongs to, or None when unknown."""
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def resolve_plan(self, price_id: Optional[str], default: PlanEnum = PlanEnum.starter) -> PlanEnum:
        """Like plan_for_price, falling back to `default` for unknown prices."""
        return self.plan_for_price(price_id) or default

    def billing_interval(self, price_id: Optional[str]) -> Optional[str]:
        """Return "annual" or "monthly" for a known price id."""
        plan = self.plan_for_price(price_id)
        if plan is None:
            return None
        return "annual" if price_id == self._plans[plan].annual_price_id else "monthly"

    def billing_type(self, price_id: Optional[str]) -> Optional[str]:
        """Ledger billing type: monthly, yearly or free."""
        plan = self.plan_for_price(price_id)
        if plan is None:
            return None
        pricing = self._plans[plan]
        if price_id == pricing.free_price_id:
            return "free"
        if price_id == pricing.annual_price_id:
            return "yearly"
        return "monthly"

    def amount_for(self, plan: PlanEnum, interval: Optional[str]) -> int:
        """Charge per billing period: a month, or a full year for annual prices."""
        pricing = self._plans[plan]
        return pricing.annual_price * 12 if interval == "annual" else pricing.monthly_price


def classify_plan_change(old_plan: Optional[PlanEnum], new_plan: PlanEnum) -> Optional[str]:
    """Return "upgraded", "downgraded" or None when the tier did not move.

    Example:
        >>> classify_plan_change(PlanEnum.starter, PlanEnum.business)
        'upgraded'
    """
    old_level = PLAN_HIERARCHY.get(old_plan, 0) if old_plan else 0
    new_level = PLAN_HIERARCHY[new_plan]
    if new_level > old_level:
        return "upgraded"
    if new_level < old_level:
        return "downgraded"
    return None
