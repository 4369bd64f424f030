"""
Subscription Domain Entity

Local subscription status plus a parsed view of a Stripe subscription
object, as delivered in webhook payloads or read back from the API.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SubscriptionStatus(str, Enum):
    """Statuses of a mirrored subscription record."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"

    @classmethod
    def from_stripe_status(cls, status: Optional[str]) -> 'SubscriptionStatus':
        """
        Collapse Stripe's status vocabulary onto the local one.

        Unknown statuses are treated as past_due: access is kept but the
        record no longer reads as healthy.
        """
        if status in ('active', 'trialing'):
            return cls.ACTIVE
        if status in ('canceled', 'cancelled', 'incomplete_expired'):
            return cls.CANCELLED
        return cls.PAST_DUE


@dataclass
class StripeSubscription:
    """
    The subset of a Stripe subscription the engine acts on.

    Attributes:
        id: Stripe subscription id
        customer_id: Stripe customer id
        price_id: Price of the first subscription item
        status: Raw Stripe status
        current_period_start: Period start, epoch seconds
        current_period_end: Period end, epoch seconds
        cancel_at_period_end: Whether cancellation is scheduled
        canceled_at: When Stripe cancelled it, epoch seconds
        created: When the subscription was created, epoch seconds
        metadata: Subscription metadata
    """
    id: str
    customer_id: Optional[str]
    price_id: Optional[str]
    status: str
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    created: Optional[int] = None
    metadata: Optional[dict] = None

    @property
    def local_status(self) -> SubscriptionStatus:
        return SubscriptionStatus.from_stripe_status(self.status)

    @classmethod
    def from_stripe(cls, data) -> 'StripeSubscription':
        """
        Parse a subscription object (plain dict or StripeObject).

        Newer API versions moved the period bounds onto the subscription
        items, so the first item is consulted when the top-level fields are
        absent.
        """
        items = (data.get('items') or {}).get('data') or []
        first_item = items[0] if items else {}
        price = first_item.get('price') or {}
        price_id = price.get('id') if hasattr(price, 'get') else price

        if not price_id:
            plan = data.get('plan') or {}
            price_id = plan.get('id')

        customer = data.get('customer')
        if hasattr(customer, 'get'):
            customer = customer.get('id')

        period_start = data.get('current_period_start') or first_item.get('current_period_start')
        period_end = data.get('current_period_end') or first_item.get('current_period_end')

        return cls(
            id=data['id'],
            customer_id=customer,
            price_id=price_id,
            status=data.get('status') or 'incomplete',
            current_period_start=int(period_start) if period_start else None,
            current_period_end=int(period_end) if period_end else None,
            cancel_at_period_end=bool(data.get('cancel_at_period_end')),
            canceled_at=data.get('canceled_at'),
            created=int(data['created']) if data.get('created') else None,
            metadata=dict(data.get('metadata') or {}),
        )
