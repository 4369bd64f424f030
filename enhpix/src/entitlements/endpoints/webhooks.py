"""
Webhook Endpoints

Stripe webhook endpoint for processing billing events.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from enhpix.src.entitlements.container import EntitlementContainer
from enhpix.src.entitlements.shared.exceptions import AuthenticityError
from .dependencies import get_container

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing-webhooks"])


@router.post("/webhook")
async def stripe_webhook(request: Request, container: EntitlementContainer = Depends(get_container)):
    """
    Process Stripe webhook events.

    Handles:
    - checkout.session.completed
    - customer.subscription.created
    - customer.subscription.updated
    - customer.subscription.deleted
    - invoice.payment_succeeded / invoice.paid
    - invoice.payment_failed

    Unverifiable deliveries get 400. Any processing failure gets 500 so that
    Stripe delivers the event again.
    """
    payload = await request.body()
    sig_header = request.headers.get('stripe-signature')

    try:
        return await container.webhook_service.process_stripe_webhook(payload, sig_header)
    except AuthenticityError:
        raise
    except Exception as e:
        # Already logged and recorded as failed by the service
        return JSONResponse(
            status_code=500,
            content={
                'received': False,
                'error': getattr(e, 'code', 'WEBHOOK_PROCESSING_FAILED'),
                'message': 'Webhook processing failed',
            },
        )
