"""Domain types for the entitlement engine."""

from .subscription import StripeSubscription, SubscriptionStatus
from .usage import ConsumeReason, ConsumeResult, UsageSnapshot, period_key, utcnow

__all__ = [
    'StripeSubscription',
    'SubscriptionStatus',
    'ConsumeReason',
    'ConsumeResult',
    'UsageSnapshot',
    'period_key',
    'utcnow',
]
