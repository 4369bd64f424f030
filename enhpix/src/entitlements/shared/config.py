"""
Plan Catalog

Maps Stripe price ids to plan tiers, billing cycles and monthly image
allocations. The catalog is built from settings once at startup and is
read-only afterwards.

Usage:
    catalog = PlanCatalog.from_settings(settings)

    plan = catalog.get_plan_by_price_id('price_pro_monthly')
    print(plan.monthly_credits)  # 400
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from enhpix.core.conf import Settings
from enhpix.src.entitlements.shared.exceptions import UnknownPriceError


class PlanTier(str, Enum):
    """Plan tier stored on the user profile."""
    FREE = 'free'
    BASIC = 'basic'
    PRO = 'pro'
    PREMIUM = 'premium'
    CANCELLED = 'cancelled'


class BillingCycle(str, Enum):
    MONTHLY = 'monthly'
    YEARLY = 'yearly'


# Tiers that can be bought; free and cancelled have no price ids
PAID_TIERS = (PlanTier.BASIC, PlanTier.PRO, PlanTier.PREMIUM)


@dataclass(frozen=True)
class Plan:
    """
    One catalog entry.

    Attributes:
        price_id: Stripe price id
        tier: Plan tier granted by the price
        billing_cycle: Monthly or yearly billing
        monthly_credits: Images allowed per calendar month
        display_name: Human-readable name shown in UI
    """
    price_id: str
    tier: PlanTier
    billing_cycle: BillingCycle
    monthly_credits: int
    display_name: str


class PlanCatalog:
    """Static price id lookup."""

    def __init__(self, plans: List[Plan], tier_credits: Dict[PlanTier, int]):
        self._by_price: Dict[str, Plan] = {}
        for plan in plans:
            if plan.price_id in self._by_price:
                raise ValueError(f"Duplicate price id in plan catalog: {plan.price_id}")
            self._by_price[plan.price_id] = plan
        self._tier_credits = dict(tier_credits)

    @classmethod
    def from_settings(cls, settings: Settings) -> 'PlanCatalog':
        tier_credits = {
            PlanTier.FREE: settings.FREE_TIER_MONTHLY_CREDITS,
            PlanTier.BASIC: settings.BASIC_MONTHLY_CREDITS,
            PlanTier.PRO: settings.PRO_MONTHLY_CREDITS,
            PlanTier.PREMIUM: settings.PREMIUM_MONTHLY_CREDITS,
            PlanTier.CANCELLED: 0,
        }
        price_ids = {
            (PlanTier.BASIC, BillingCycle.MONTHLY): settings.STRIPE_PRICE_BASIC_MONTHLY,
            (PlanTier.BASIC, BillingCycle.YEARLY): settings.STRIPE_PRICE_BASIC_YEARLY,
            (PlanTier.PRO, BillingCycle.MONTHLY): settings.STRIPE_PRICE_PRO_MONTHLY,
            (PlanTier.PRO, BillingCycle.YEARLY): settings.STRIPE_PRICE_PRO_YEARLY,
            (PlanTier.PREMIUM, BillingCycle.MONTHLY): settings.STRIPE_PRICE_PREMIUM_MONTHLY,
            (PlanTier.PREMIUM, BillingCycle.YEARLY): settings.STRIPE_PRICE_PREMIUM_YEARLY,
        }
        plans = [
            Plan(
                price_id=price_id,
                tier=tier,
                billing_cycle=cycle,
                monthly_credits=tier_credits[tier],
                display_name=f"{tier.value.title()} ({cycle.value})",
            )
            for (tier, cycle), price_id in price_ids.items()
            if price_id
        ]
        return cls(plans, tier_credits)

    def get_plan_by_price_id(self, price_id: Optional[str]) -> Plan:
        """
        Resolve a price id.

        Raises:
            UnknownPriceError: If the price id is not configured
        """
        plan = self._by_price.get(price_id) if price_id else None
        if plan is None:
            raise UnknownPriceError(price_id or '')
        return plan

    def credits_for_tier(self, tier: PlanTier) -> int:
        return self._tier_credits.get(PlanTier(tier), 0)

    def price_ids(self) -> List[str]:
        return list(self._by_price)

    def __contains__(self, price_id: str) -> bool:
        return price_id in self._by_price
