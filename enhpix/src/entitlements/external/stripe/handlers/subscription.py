"""
Subscription Webhook Handler

Handles subscription lifecycle webhook events:
- customer.subscription.created
- customer.subscription.updated
- customer.subscription.deleted

A user has at most one live subscription record; the most recently created
Stripe subscription wins and the others are cancelled. A cancelled record is
terminal. Limit resets go through the ledger and never touch
`images_processed`.
"""

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from enhpix.src.entitlements.domain.subscription import StripeSubscription, SubscriptionStatus
from enhpix.src.entitlements.domain.usage import utcnow
from enhpix.src.entitlements.ledger.manager import CreditLedger
from enhpix.src.entitlements.shared.config import PlanCatalog, PlanTier
from enhpix.src.entitlements.shared.exceptions import SubscriptionNotMirroredError
from enhpix.src.entitlements.store.models import SubscriptionRecord
from enhpix.src.entitlements.store.repository import EntitlementStore
from enhpix.src.entitlements.tasks.queue import TASK_TRACK_CANCELLATION, EntitlementTaskQueue
from .customer import CustomerResolver

logger = logging.getLogger(__name__)


class SubscriptionHandler:
    """
    Handler for Stripe subscription webhook events.

    Every method runs inside the caller's transaction and is safe to
    re-execute for the same event.
    """

    def __init__(
        self,
        store: EntitlementStore,
        ledger: CreditLedger,
        catalog: PlanCatalog,
        resolver: CustomerResolver,
        task_queue: EntitlementTaskQueue,
    ):
        self._store = store
        self._ledger = ledger
        self._catalog = catalog
        self._resolver = resolver
        self._task_queue = task_queue

    async def handle_subscription_created(self, session: AsyncSession, event: Dict[str, Any]) -> str:
        """
        Handle customer.subscription.created event.

        Mirrors the subscription as active, seeds this month's limit with the
        plan allocation and points the profile at the new subscription.

        Raises:
            UnknownPriceError: If the price is not in the catalog
            LookupRaceError: If the customer is not linked to any user
        """
        subscription = StripeSubscription.from_stripe(event['data']['object'])
        logger.info(
            f"[SUBSCRIPTION] Created: sub={subscription.id}, status={subscription.status}, "
            f"price={subscription.price_id}"
        )

        plan = self._catalog.get_plan_by_price_id(subscription.price_id)
        profile = await self._resolver.resolve(
            session, subscription.customer_id, (subscription.metadata or {}).get('user_id')
        )
        user_id = profile.user_id
        now = utcnow()
        stripe_created = subscription.created or event.get('created')

        # Deliveries are unordered: an older subscription arriving late must
        # not take over from the newer one
        outdated = await self._store.has_newer_live_subscription(
            session, user_id, subscription.id, stripe_created
        )

        inserted = await self._store.insert_subscription(
            session,
            stripe_subscription_id=subscription.id,
            user_id=user_id,
            stripe_customer_id=subscription.customer_id,
            stripe_price_id=subscription.price_id,
            plan=plan.tier.value,
            billing_cycle=plan.billing_cycle.value,
            status=SubscriptionStatus.CANCELLED.value if outdated else SubscriptionStatus.ACTIVE.value,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            cancelled_at=now if outdated else None,
            last_event_at=event.get('created'),
            stripe_created=stripe_created,
        )
        if not inserted:
            logger.info(f"[SUBSCRIPTION] {subscription.id} already mirrored, duplicate delivery")
            return 'duplicate'

        if outdated:
            logger.info(
                f"[SUBSCRIPTION] {subscription.id} predates {user_id}'s current subscription, "
                f"recorded as superseded"
            )
            return 'superseded'

        superseded = await self._store.cancel_other_subscriptions(session, user_id, subscription.id, now)
        if superseded:
            logger.info(f"[SUBSCRIPTION] Cancelled {superseded} superseded subscription(s) of {user_id}")

        usage = await self._ledger.set_period_limit(
            session, user_id, plan.monthly_credits, subscription.current_period_end, now=now
        )
        if usage is None:
            usage = await self._ledger.current_usage(session, user_id, now)

        await self._store.update_profile(
            session,
            user_id,
            plan=plan.tier.value,
            credits_remaining=usage.remaining if usage else plan.monthly_credits,
            current_subscription_id=subscription.id,
        )
        logger.info(f"[SUBSCRIPTION] {user_id} now on {plan.tier.value} ({plan.monthly_credits} images/month)")
        return 'created'

    async def handle_subscription_updated(self, session: AsyncSession, event: Dict[str, Any]) -> str:
        """
        Handle customer.subscription.updated event.

        This is triggered when:
        - Status changes (active -> past_due, etc.)
        - Plan changes (upgrades/downgrades)
        - A new billing period starts
        - Cancel at period end is set/unset

        Raises:
            SubscriptionNotMirroredError: If the subscription has no local record
            UnknownPriceError: If the new price is not in the catalog
        """
        subscription = StripeSubscription.from_stripe(event['data']['object'])
        logger.info(
            f"[SUBSCRIPTION] Updated: sub={subscription.id}, status={subscription.status}, "
            f"price={subscription.price_id}"
        )

        record = await self._store.get_subscription(session, subscription.id)
        if record is None:
            raise SubscriptionNotMirroredError(subscription.id)

        if record.status == SubscriptionStatus.CANCELLED.value:
            logger.info(f"[SUBSCRIPTION] {subscription.id} is cancelled locally, ignoring update")
            return 'ignored'

        if subscription.local_status == SubscriptionStatus.CANCELLED:
            return await self._cancel_record(session, record, event, reason='subscription_ended')

        plan = self._catalog.get_plan_by_price_id(subscription.price_id)

        period_advanced = subscription.current_period_start is not None and (
            record.current_period_start is None
            or subscription.current_period_start > record.current_period_start
        )
        price_changed = subscription.price_id != record.stripe_price_id
        user_id = record.user_id

        applied = await self._store.apply_subscription_event(
            session,
            subscription.id,
            event.get('created'),
            stripe_price_id=subscription.price_id,
            plan=plan.tier.value,
            billing_cycle=plan.billing_cycle.value,
            status=subscription.local_status.value,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
        )
        if not applied:
            logger.info(f"[SUBSCRIPTION] Stale update for {subscription.id} ignored")
            return 'stale'

        profile = await self._store.get_profile(session, user_id)
        if profile.current_subscription_id not in (None, subscription.id):
            logger.info(f"[SUBSCRIPTION] {subscription.id} is not {user_id}'s current subscription")
            return 'updated'

        profile_values = {'plan': plan.tier.value, 'current_subscription_id': subscription.id}
        if period_advanced or price_changed:
            usage = await self._ledger.set_period_limit(
                session, user_id, plan.monthly_credits, subscription.current_period_end
            )
            if usage is not None:
                profile_values['credits_remaining'] = usage.remaining
            logger.info(
                f"[SUBSCRIPTION] Limit reset for {user_id}: "
                f"period_advanced={period_advanced}, price_changed={price_changed}"
            )

        await self._store.update_profile(session, user_id, **profile_values)
        return 'updated'

    async def handle_subscription_deleted(self, session: AsyncSession, event: Dict[str, Any]) -> str:
        """
        Handle customer.subscription.deleted event.

        Credits are not zeroed: the profile keeps its remaining balance for
        display, the ledger refuses further consumption.

        Raises:
            SubscriptionNotMirroredError: If the subscription has no local record
        """
        subscription_id = event['data']['object']['id']
        logger.info(f"[SUBSCRIPTION] Deleted: sub={subscription_id}")

        record = await self._store.get_subscription(session, subscription_id)
        if record is None:
            raise SubscriptionNotMirroredError(subscription_id)

        if record.status == SubscriptionStatus.CANCELLED.value:
            logger.info(f"[SUBSCRIPTION] {subscription_id} already cancelled")
            return 'already_cancelled'

        return await self._cancel_record(session, record, event, reason='subscription_deleted')

    async def _cancel_record(
        self,
        session: AsyncSession,
        record: SubscriptionRecord,
        event: Dict[str, Any],
        reason: str,
    ) -> str:
        user_id = record.user_id
        subscription_id = record.stripe_subscription_id
        last_event_at = max(filter(None, [event.get('created'), record.last_event_at]), default=None)

        await self._store.apply_subscription_event(
            session,
            subscription_id,
            None,
            status=SubscriptionStatus.CANCELLED.value,
            cancelled_at=utcnow(),
            last_event_at=last_event_at,
        )

        profile = await self._store.get_profile(session, user_id)
        if profile.current_subscription_id not in (None, subscription_id):
            logger.info(f"[SUBSCRIPTION] {user_id} has a newer subscription, profile left as is")
            return 'cancelled'

        previous_plan = profile.plan
        credits_remaining = profile.credits_remaining
        await self._store.update_profile(session, user_id, plan=PlanTier.CANCELLED.value)
        await self._task_queue.enqueue(
            session,
            TASK_TRACK_CANCELLATION,
            {
                'user_id': user_id,
                'email': profile.email,
                'plan': previous_plan,
                'credits_remaining': credits_remaining,
                'reason': reason,
                'stripe_subscription_id': subscription_id,
            },
        )
        logger.info(f"[SUBSCRIPTION] {user_id} cancelled with {credits_remaining} credits remaining")
        return 'cancelled'
