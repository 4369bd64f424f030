"""
Stripe integration: API client, circuit breaker, webhook event log,
webhook dispatcher and per-event handlers.
"""

from .circuit_breaker import CircuitState, StripeCircuitBreaker
from .client import StripeClient
from .webhook_lock import WebhookEventLog
from .webhooks import WebhookService

__all__ = [
    'CircuitState',
    'StripeCircuitBreaker',
    'StripeClient',
    'WebhookEventLog',
    'WebhookService',
]
