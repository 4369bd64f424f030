"""
Invoice Webhook Handler

Handles invoice payment events:
- invoice.payment_succeeded / invoice.paid -> subscription active
- invoice.payment_failed -> subscription past_due

Payment events only move the status. Granted credits are kept either way.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from enhpix.src.entitlements.domain.subscription import SubscriptionStatus
from enhpix.src.entitlements.shared.exceptions import SubscriptionNotMirroredError
from enhpix.src.entitlements.store.repository import EntitlementStore

logger = logging.getLogger(__name__)


def get_invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription an invoice belongs to, in both old and new API shapes."""
    subscription = invoice.get('subscription')
    if isinstance(subscription, dict):
        subscription = subscription.get('id')
    if subscription:
        return subscription

    parent = invoice.get('parent') or {}
    details = parent.get('subscription_details') or {}
    return details.get('subscription')


class InvoiceHandler:

    def __init__(self, store: EntitlementStore):
        self._store = store

    async def handle_invoice_paid(self, session: AsyncSession, event: Dict[str, Any]) -> str:
        return await self._set_status(session, event, SubscriptionStatus.ACTIVE)

    async def handle_invoice_failed(self, session: AsyncSession, event: Dict[str, Any]) -> str:
        return await self._set_status(session, event, SubscriptionStatus.PAST_DUE)

    async def _set_status(
        self,
        session: AsyncSession,
        event: Dict[str, Any],
        status: SubscriptionStatus,
    ) -> str:
        invoice = event['data']['object']
        subscription_id = get_invoice_subscription_id(invoice)
        logger.info(
            f"[INVOICE] {event['type']}: invoice={invoice.get('id')}, sub={subscription_id}"
        )

        if not subscription_id:
            logger.info(f"[INVOICE] Invoice {invoice.get('id')} has no subscription, ignoring")
            return 'ignored'

        record = await self._store.get_subscription(session, subscription_id)
        if record is None:
            raise SubscriptionNotMirroredError(subscription_id)

        if record.status == SubscriptionStatus.CANCELLED.value:
            logger.info(f"[INVOICE] {subscription_id} is cancelled locally, status left as is")
            return 'ignored'

        applied = await self._store.apply_subscription_event(
            session, subscription_id, event.get('created'), status=status.value
        )
        if not applied:
            logger.info(f"[INVOICE] Stale {event['type']} for {subscription_id} ignored")
            return 'stale'

        if status == SubscriptionStatus.PAST_DUE:
            logger.warning(f"[INVOICE] Payment failed for {subscription_id} (user {record.user_id})")
        return status.value
