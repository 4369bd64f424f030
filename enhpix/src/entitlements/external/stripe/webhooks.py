"""
Stripe Webhook Service

Central dispatcher for Stripe webhook events.
Handles signature verification, deduplication, and routing to handlers.

Outcomes:
- Unverifiable delivery: AuthenticityError, nothing recorded
- Handled (or unhandled type): event marked completed, acknowledged
- Configuration drift or lookup race: event marked skipped, acknowledged
- Anything else: event marked failed, error propagates so Stripe retries
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enhpix.database.db import session_scope
from enhpix.src.entitlements.shared.exceptions import (
    AuthenticityError,
    EntitlementError,
    LookupRaceError,
    PersistenceUnavailableError,
    SubscriptionNotMirroredError,
    UnknownPriceError,
)
from enhpix.src.entitlements.tasks.queue import EntitlementTaskQueue
from .handlers.checkout import CheckoutHandler
from .handlers.invoice import InvoiceHandler, get_invoice_subscription_id
from .handlers.subscription import SubscriptionHandler
from .webhook_lock import WebhookEventLog

logger = logging.getLogger(__name__)

# Skip reasons recorded on the event log
SKIP_REASONS = {
    UnknownPriceError: 'unknown_price',
    LookupRaceError: 'user_not_linked',
    SubscriptionNotMirroredError: 'subscription_not_mirrored',
}
SKIPPABLE_ERRORS = tuple(SKIP_REASONS)


def _event_refs(event: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Customer and subscription ids referenced by an event, for the event log."""
    obj = (event.get('data') or {}).get('object') or {}
    event_type = event.get('type', '')
    customer_id = obj.get('customer')
    if isinstance(customer_id, dict):
        customer_id = customer_id.get('id')

    if event_type.startswith('customer.subscription.'):
        subscription_id = obj.get('id')
    elif event_type.startswith('invoice.'):
        subscription_id = get_invoice_subscription_id(obj)
    else:
        subscription_id = obj.get('subscription')
    return customer_id, subscription_id


class WebhookService:
    """
    Central service for processing Stripe webhooks.

    Responsibilities:
    - Verify webhook signatures
    - Deduplicate events through the webhook event log
    - Route events to the appropriate handler inside one transaction
    - Mark each event completed, skipped or failed

    Usage:
        result = await webhook_service.process_stripe_webhook(payload, sig_header)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_log: WebhookEventLog,
        checkout_handler: CheckoutHandler,
        subscription_handler: SubscriptionHandler,
        invoice_handler: InvoiceHandler,
        task_queue: EntitlementTaskQueue,
        webhook_secret: str,
        tolerance: int = 300,
    ):
        self._session_factory = session_factory
        self._event_log = event_log
        self._checkout = checkout_handler
        self._subscriptions = subscription_handler
        self._invoices = invoice_handler
        self._task_queue = task_queue
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and parse the event.

        Raises:
            AuthenticityError: If the header is missing, the signature does not
                match, or the payload is not an event
        """
        if not sig_header:
            raise AuthenticityError("Missing stripe-signature header")

        if not self._webhook_secret:
            logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET not configured, rejecting delivery")
            raise AuthenticityError("Webhook secret not configured")

        try:
            body = payload.decode('utf-8')
            stripe.WebhookSignature.verify_header(
                body, sig_header, self._webhook_secret, self._tolerance
            )
        except UnicodeDecodeError as e:
            raise AuthenticityError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[WEBHOOK] Invalid signature: {e}")
            raise AuthenticityError("Invalid webhook signature") from e

        try:
            event = json.loads(body)
        except ValueError as e:
            logger.warning(f"[WEBHOOK] Invalid payload: {e}")
            raise AuthenticityError("Invalid payload") from e

        if not isinstance(event, dict) or not event.get('id') or not event.get('type') \
                or not isinstance(event.get('data'), dict):
            raise AuthenticityError("Payload is not a Stripe event")
        return event

    async def process_stripe_webhook(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Process an incoming Stripe webhook.

        Returns:
            Dict acknowledging the delivery

        Raises:
            AuthenticityError: If the delivery cannot be verified
            PersistenceUnavailableError: If the store failed while handling it
            Exception: Any other handler failure, after marking the event failed
        """
        event = self.verify_event(payload, sig_header)
        event_id = event['id']
        event_type = event['type']
        customer_id, subscription_id = _event_refs(event)

        try:
            can_process, reason = await self._event_log.check_and_mark_processing(
                event_id, event_type, customer_id, subscription_id
            )
        except SQLAlchemyError as e:
            raise PersistenceUnavailableError(
                "Webhook event log unavailable", operation="check_and_mark_processing"
            ) from e

        if not can_process:
            logger.info(f"[WEBHOOK] Skipping event {event_id}: {reason}")
            return {'received': True, 'event_id': event_id, 'status': 'duplicate', 'message': reason}

        logger.info(f"[WEBHOOK] Processing event type: {event_type} (ID: {event_id})")

        try:
            outcome = await self._handle(event)
        except SKIPPABLE_ERRORS as e:
            skip_reason = SKIP_REASONS[type(e)]
            logger.warning(f"[WEBHOOK] Skipped {event_type} {event_id}: {skip_reason} ({e.message})")
            await self._event_log.mark_skipped(event_id, skip_reason)
            return {'received': True, 'event_id': event_id, 'status': 'skipped', 'reason': skip_reason}
        except Exception as e:
            logger.error(f"[WEBHOOK] Error processing {event_type} {event_id}: {e}", exc_info=True)
            await self._mark_failed(event_id, e)
            if isinstance(e, SQLAlchemyError):
                raise PersistenceUnavailableError(
                    "Entitlement store unavailable", operation=event_type
                ) from e
            raise

        await self._drain_tasks()
        return {'received': True, 'event_id': event_id, 'status': 'processed', 'outcome': outcome}

    async def _handle(self, event: Dict[str, Any]) -> str:
        """
        Run the handler and mark the event completed in one transaction.

        A lookup race is retried once in a fresh transaction: the checkout
        event linking the customer may have committed in the meantime.
        """
        for attempt in (1, 2):
            try:
                async with session_scope(self._session_factory) as session:
                    outcome = await self._route_event(session, event)
                    await self._event_log.mark_completed(session, event['id'])
                return outcome
            except LookupRaceError:
                if attempt == 2:
                    raise
                logger.info(f"[WEBHOOK] User not linked yet for {event['id']}, retrying once")
        raise AssertionError("unreachable")

    async def _route_event(self, session: AsyncSession, event: Dict[str, Any]) -> str:
        """
        Route event to the appropriate handler.

        Returns:
            Handler outcome, or 'unhandled'
        """
        event_type = event['type']

        # Checkout events
        if event_type == 'checkout.session.completed':
            return await self._checkout.handle_checkout_completed(session, event)

        # Subscription events
        elif event_type == 'customer.subscription.created':
            return await self._subscriptions.handle_subscription_created(session, event)

        elif event_type == 'customer.subscription.updated':
            return await self._subscriptions.handle_subscription_updated(session, event)

        elif event_type == 'customer.subscription.deleted':
            return await self._subscriptions.handle_subscription_deleted(session, event)

        # Invoice events
        elif event_type in ('invoice.payment_succeeded', 'invoice.paid'):
            return await self._invoices.handle_invoice_paid(session, event)

        elif event_type == 'invoice.payment_failed':
            return await self._invoices.handle_invoice_failed(session, event)

        logger.info(f"[WEBHOOK] Unhandled event type: {event_type}")
        return 'unhandled'

    async def _mark_failed(self, event_id: str, error: Exception) -> None:
        error_message = f"{type(error).__name__}: {str(error)[:500]}"
        try:
            await self._event_log.mark_failed(event_id, error_message)
        except SQLAlchemyError as e:
            # The delivery is reported as failed regardless; Stripe will retry it
            logger.error(f"[WEBHOOK] Could not mark {event_id} as failed: {e}")

    async def _drain_tasks(self) -> None:
        try:
            await self._task_queue.run_pending()
        except (SQLAlchemyError, EntitlementError) as e:
            # Tasks stay pending and are picked up by the next drain
            logger.error(f"[TASKS] Drain after webhook failed: {e}", exc_info=True)
