"""
Plan Reconciliation

Compares a user's plan in the local mirror with the active subscription
Stripe reports, and corrects the mirror when they disagree. Runs on demand
(session start, admin tools) rather than on a schedule.

Nothing is written until the comparison is complete, and a failed read of
Stripe never turns into a correction.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enhpix.database.db import session_scope
from enhpix.src.entitlements.domain.subscription import StripeSubscription
from enhpix.src.entitlements.domain.usage import utcnow
from enhpix.src.entitlements.external.stripe.client import StripeClient
from enhpix.src.entitlements.external.stripe.webhook_lock import WebhookEventLog
from enhpix.src.entitlements.ledger.manager import CreditLedger
from enhpix.src.entitlements.shared.config import PlanCatalog, PlanTier
from enhpix.src.entitlements.shared.exceptions import (
    PersistenceUnavailableError,
    ProfileNotFoundError,
    ReconciliationSourceError,
    UnknownPriceError,
)
from enhpix.src.entitlements.store.repository import EntitlementStore

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    """Outcome of comparing the mirror with Stripe for one user."""
    user_id: str
    email: Optional[str] = None
    current_tier: Optional[str] = None
    correct_tier: Optional[str] = None
    current_credits: int = 0
    correct_credits: int = 0
    needs_update: bool = False
    stripe_customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    subscription_status: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


class Reconciler:
    """
    Detects and repairs drift between Stripe and the local mirror.

    Usage:
        result = await reconciler.verify(user_id)
        if result.needs_update:
            await reconciler.correct_user_plan(user_id, result.correct_tier, result.correct_credits)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: EntitlementStore,
        ledger: CreditLedger,
        catalog: PlanCatalog,
        stripe_client: StripeClient,
        event_log: WebhookEventLog,
    ):
        self._session_factory = session_factory
        self._store = store
        self._ledger = ledger
        self._catalog = catalog
        self._stripe = stripe_client
        self._event_log = event_log

    # =========================================================================
    # VERIFY
    # =========================================================================

    async def verify(self, user_id: str) -> VerificationResult:
        """
        Compare the user's mirrored plan with Stripe.

        Failures to read Stripe or to resolve its price are reported in
        `error` with `needs_update=False`.
        """
        try:
            async with self._session_factory() as session:
                profile = await self._store.get_profile(session, user_id)
        except SQLAlchemyError as e:
            raise PersistenceUnavailableError("Profile could not be read", operation="verify") from e

        if profile is None:
            return VerificationResult(user_id=user_id, error='profile_not_found')

        result = VerificationResult(
            user_id=user_id,
            email=profile.email,
            current_tier=profile.plan,
            current_credits=profile.credits_remaining,
            stripe_customer_id=profile.stripe_customer_id,
        )

        if not profile.stripe_customer_id:
            result.correct_tier = PlanTier.FREE.value
            result.correct_credits = self._catalog.credits_for_tier(PlanTier.FREE)
            result.subscription_status = 'none'
            return result

        try:
            subscriptions = await self._stripe.list_active_subscriptions(profile.stripe_customer_id)
        except ReconciliationSourceError as e:
            logger.warning(f"[RECONCILE] Could not read Stripe for {user_id}: {e.message}")
            result.error = e.message
            return result

        if not subscriptions:
            if profile.plan == PlanTier.CANCELLED.value:
                result.correct_tier = PlanTier.CANCELLED.value
                result.correct_credits = profile.credits_remaining
                result.subscription_status = 'cancelled'
            else:
                # Between periods or lapsed: fall back to basic rather than guess cancelled
                result.correct_tier = PlanTier.BASIC.value
                result.correct_credits = self._catalog.credits_for_tier(PlanTier.BASIC)
                result.subscription_status = 'inactive'
            result.needs_update = result.correct_tier != profile.plan
            return result

        subscription = StripeSubscription.from_stripe(subscriptions[0])
        result.subscription_id = subscription.id
        result.subscription_status = subscription.status

        try:
            plan = self._catalog.get_plan_by_price_id(subscription.price_id)
        except UnknownPriceError as e:
            logger.error(f"[RECONCILE] {user_id}: {e.message}")
            result.error = e.message
            return result

        result.billing_cycle = plan.billing_cycle.value

        if profile.plan == PlanTier.CANCELLED.value and subscription.cancel_at_period_end:
            # Cancelled locally, Stripe keeps it active until the period ends
            result.correct_tier = PlanTier.CANCELLED.value
            result.correct_credits = profile.credits_remaining
            return result

        result.correct_tier = plan.tier.value
        result.correct_credits = plan.monthly_credits
        result.needs_update = result.correct_tier != profile.plan
        return result

    # =========================================================================
    # CORRECT
    # =========================================================================

    async def correct_user_plan(self, user_id: str, tier: str, credits: int) -> Dict:
        """
        Overwrite the user's tier and this month's limit.

        `images_processed` is kept; the credit snapshot becomes
        `credits - images_processed`, floored at zero.

        Raises:
            ProfileNotFoundError: If the user has no profile
            PersistenceUnavailableError: If the store cannot be written
        """
        tier = PlanTier(tier).value
        now = utcnow()

        try:
            async with session_scope(self._session_factory) as session:
                profile = await self._store.get_profile(session, user_id)
                if profile is None:
                    raise ProfileNotFoundError(user_id)
                previous_tier = profile.plan

                usage = await self._ledger.set_period_limit(
                    session, user_id, credits, period_end=None, now=now, force=True
                )
                processed = usage.images_processed if usage else 0
                remaining = max(0, credits - processed)
                await self._store.update_profile(
                    session, user_id, plan=tier, credits_remaining=remaining
                )
        except SQLAlchemyError as e:
            raise PersistenceUnavailableError(
                "Plan correction could not be saved", operation="correct_user_plan"
            ) from e

        logger.info(
            f"[RECONCILE] Corrected {user_id}: {previous_tier} -> {tier}, "
            f"limit {credits}, {remaining} remaining"
        )
        return {
            'success': True,
            'user_id': user_id,
            'previous_tier': previous_tier,
            'tier': tier,
            'images_limit': credits,
            'images_processed': processed,
            'credits_remaining': remaining,
        }

    async def reconcile(self, user_id: str) -> Dict:
        """Verify, then correct when drift was found and nothing failed."""
        verification = await self.verify(user_id)
        corrected = None
        if verification.needs_update and not verification.error:
            corrected = await self.correct_user_plan(
                user_id, verification.correct_tier, verification.correct_credits
            )
        return {
            'verification': verification.to_dict(),
            'corrected': corrected is not None,
            'correction': corrected,
        }

    # =========================================================================
    # BATCH
    # =========================================================================

    async def reconcile_all(self) -> Dict:
        """
        Reconcile every user linked to a Stripe customer.

        Returns:
            Dict with checked, fixed, failed counts
        """
        results = {
            'checked': 0,
            'fixed': 0,
            'failed': 0,
            'errors': []
        }

        try:
            async with self._session_factory() as session:
                profiles = await self._store.list_profiles_with_customer(session)
                user_ids = [profile.user_id for profile in profiles]
        except SQLAlchemyError as e:
            raise PersistenceUnavailableError("Profiles could not be listed", operation="reconcile_all") from e

        logger.info(f"[RECONCILE] Checking {len(user_ids)} linked users")

        for user_id in user_ids:
            results['checked'] += 1
            try:
                outcome = await self.reconcile(user_id)
            except (PersistenceUnavailableError, ProfileNotFoundError) as e:
                results['failed'] += 1
                results['errors'].append(f"{user_id}: {e.message}")
                logger.error(f"[RECONCILE] Failed for {user_id}: {e.message}")
                continue

            error = outcome['verification']['error']
            if error:
                results['failed'] += 1
                results['errors'].append(f"{user_id}: {error}")
            elif outcome['corrected']:
                results['fixed'] += 1

        logger.info(
            f"[RECONCILE] Batch done: {results['checked']} checked, "
            f"{results['fixed']} fixed, {results['failed']} failed"
        )
        return results

    async def reconciliation_candidates(self, limit: int = 100) -> List[Dict]:
        """
        Users referenced by webhook events that were acknowledged but skipped.
        """
        events = await self._event_log.list_skipped(limit)
        candidates = []

        async with self._session_factory() as session:
            for event in events:
                user_id = None
                if event.customer_id:
                    profile = await self._store.get_profile_by_customer(session, event.customer_id)
                    user_id = profile.user_id if profile else None
                if user_id is None and event.subscription_id:
                    record = await self._store.get_subscription(session, event.subscription_id)
                    user_id = record.user_id if record else None
                candidates.append({
                    'event_id': event.event_id,
                    'event_type': event.event_type,
                    'reason': event.detail,
                    'customer_id': event.customer_id,
                    'subscription_id': event.subscription_id,
                    'user_id': user_id,
                    'skipped_at': event.updated_at.isoformat() if event.updated_at else None,
                })
        return candidates
