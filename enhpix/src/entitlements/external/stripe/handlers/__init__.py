"""
Stripe Webhook Handlers

Contains handlers for different Stripe webhook event types:
- CheckoutHandler: Checkout session events
- SubscriptionHandler: Subscription lifecycle events
- InvoiceHandler: Invoice and payment events
- CustomerResolver: customer id -> user lookup shared by the handlers
"""

from .checkout import CheckoutHandler
from .customer import CustomerResolver
from .invoice import InvoiceHandler
from .subscription import SubscriptionHandler

__all__ = [
    'CheckoutHandler',
    'CustomerResolver',
    'InvoiceHandler',
    'SubscriptionHandler',
]
