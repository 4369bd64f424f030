"""Persistent entitlement mirror."""

from .models import (
    CancelledUser,
    EntitlementTask,
    SubscriptionRecord,
    UsageRecord,
    UserProfile,
    WebhookEvent,
)
from .repository import EntitlementStore

__all__ = [
    'CancelledUser',
    'EntitlementTask',
    'SubscriptionRecord',
    'UsageRecord',
    'UserProfile',
    'WebhookEvent',
    'EntitlementStore',
]
