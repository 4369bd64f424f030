"""
Subscription Cancellation

Two-phase cancellation: Stripe is asked first, and the mirror changes only
after Stripe confirmed. A Stripe failure leaves the mirror exactly as it was.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enhpix.database.db import session_scope
from enhpix.src.entitlements.domain.subscription import SubscriptionStatus
from enhpix.src.entitlements.domain.usage import utcnow
from enhpix.src.entitlements.external.stripe.client import StripeClient
from enhpix.src.entitlements.external.stripe.idempotency import generate_cancellation_key
from enhpix.src.entitlements.shared.config import PlanTier
from enhpix.src.entitlements.shared.exceptions import (
    PersistenceUnavailableError,
    ProfileNotFoundError,
    ReconciliationSourceError,
    SubscriptionError,
)
from enhpix.src.entitlements.store.repository import EntitlementStore
from enhpix.src.entitlements.tasks.queue import TASK_TRACK_CANCELLATION, EntitlementTaskQueue

logger = logging.getLogger(__name__)


class SubscriptionLifecycle:
    """
    Usage:
        result = await lifecycle.cancel_subscription(user_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: EntitlementStore,
        stripe_client: StripeClient,
        task_queue: EntitlementTaskQueue,
    ):
        self._session_factory = session_factory
        self._store = store
        self._stripe = stripe_client
        self._task_queue = task_queue

    async def cancel_subscription(self, user_id: str, reason: Optional[str] = None) -> Dict:
        """
        Cancel the user's subscription at the end of the current period.

        Args:
            user_id: Authenticated user id
            reason: Optional cancellation reason for tracking

        Returns:
            Dict with success, subscription_id and when access ends

        Raises:
            ProfileNotFoundError: If the user has no profile
            SubscriptionError: If there is nothing to cancel or Stripe refused
            ReconciliationSourceError: If Stripe could not be reached
        """
        logger.info(f"[CANCEL] Processing cancellation for {user_id}")

        try:
            async with self._session_factory() as session:
                profile = await self._store.get_profile(session, user_id)
                if profile is None:
                    raise ProfileNotFoundError(user_id)
                record = await self._store.get_current_subscription(session, user_id)
                latest = None
                if record is None:
                    latest = await self._store.get_latest_subscription(session, user_id)
        except SQLAlchemyError as e:
            raise PersistenceUnavailableError(
                "Subscription could not be read", operation="cancel_subscription"
            ) from e

        if record is None:
            if latest is not None and latest.status == SubscriptionStatus.CANCELLED.value:
                return {
                    'success': True,
                    'already_cancelled': True,
                    'subscription_id': latest.stripe_subscription_id,
                    'message': 'Subscription already cancelled',
                }
            raise SubscriptionError(
                code="NO_SUBSCRIPTION",
                message="No active subscription found"
            )

        subscription_id = record.stripe_subscription_id

        # Phase 1: Stripe
        remote = await self._request_cancellation(user_id, subscription_id)

        # Phase 2: mirror
        period_end = remote.get('current_period_end') or record.current_period_end
        try:
            async with session_scope(self._session_factory) as session:
                await self._store.apply_subscription_event(
                    session,
                    subscription_id,
                    None,
                    status=SubscriptionStatus.CANCELLED.value,
                    cancel_at_period_end=True,
                    cancelled_at=utcnow(),
                )
                await self._store.update_profile(session, user_id, plan=PlanTier.CANCELLED.value)
                await self._task_queue.enqueue(
                    session,
                    TASK_TRACK_CANCELLATION,
                    {
                        'user_id': user_id,
                        'email': profile.email,
                        'plan': profile.plan,
                        'credits_remaining': profile.credits_remaining,
                        'reason': reason or 'user_requested',
                        'stripe_subscription_id': subscription_id,
                    },
                )
        except SQLAlchemyError as e:
            # Stripe already accepted; the next subscription.updated/deleted event or
            # a reconcile brings the mirror in line
            logger.error(f"[CANCEL] Stripe cancelled {subscription_id} but the mirror update failed: {e}")
            raise PersistenceUnavailableError(
                "Cancellation accepted by Stripe but not recorded", operation="cancel_subscription"
            ) from e

        access_until = None
        if period_end:
            access_until = datetime.fromtimestamp(period_end, tz=timezone.utc).isoformat()

        logger.info(f"[CANCEL] {user_id} cancelled {subscription_id}, access until {access_until}")
        return {
            'success': True,
            'already_cancelled': False,
            'subscription_id': subscription_id,
            'cancel_at_period_end': True,
            'access_until': access_until,
            'message': 'Subscription will cancel at the end of the billing period',
        }

    async def _request_cancellation(self, user_id: str, subscription_id: str) -> Dict:
        """
        Ask Stripe to cancel at period end.

        A Stripe error is tolerated only when reading the subscription back
        shows it is already cancelled.
        """
        try:
            return await self._stripe.cancel_at_period_end(
                subscription_id, idempotency_key=generate_cancellation_key(user_id, subscription_id)
            )
        except stripe.StripeError as e:
            logger.warning(f"[CANCEL] Stripe refused to cancel {subscription_id}: {e}")
            refusal = e
        except asyncio.TimeoutError as e:
            raise ReconciliationSourceError(
                "Stripe did not answer the cancellation in time", operation="cancel_subscription"
            ) from e
        except ValueError as e:
            raise ReconciliationSourceError(str(e), operation="cancel_subscription") from e

        remote = await self._stripe.retrieve_subscription(subscription_id)
        if remote.get('status') in ('canceled', 'incomplete_expired'):
            logger.info(f"[CANCEL] {subscription_id} is already cancelled in Stripe")
            return remote

        raise SubscriptionError(
            code="CANCEL_FAILED",
            message=f"Stripe refused the cancellation: {getattr(refusal, 'user_message', None) or refusal}",
            subscription_id=subscription_id,
        )
