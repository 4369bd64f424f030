"""
Credit Ledger

Monthly image quota per user:
- Atomic consume through one conditional UPDATE (never double-spends)
- Lazy seeding of the period's usage record from the plan allocation
- Limit revisions guarded by the authoritative subscription period end

Limits are revised; `images_processed` is only ever incremented by a grant.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enhpix.database.db import dialect_insert, session_scope
from enhpix.src.entitlements.domain.usage import (
    ConsumeReason,
    ConsumeResult,
    UsageSnapshot,
    period_key,
    utcnow,
)
from enhpix.src.entitlements.shared.config import PlanCatalog, PlanTier
from enhpix.src.entitlements.shared.exceptions import (
    PersistenceUnavailableError,
    ProfileNotFoundError,
)
from enhpix.src.entitlements.store.models import UsageRecord, UserProfile
from enhpix.src.entitlements.store.repository import EntitlementStore

logger = logging.getLogger(__name__)


class CreditLedger:
    """
    Enforces per-user, per-month image quotas.

    Usage:
        ledger = CreditLedger(session_factory, store, catalog)

        result = await ledger.try_consume(user_id)
        if not result.granted:
            return result.message
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: EntitlementStore,
        catalog: PlanCatalog,
    ):
        self._session_factory = session_factory
        self._store = store
        self._catalog = catalog

    # =========================================================================
    # CONSUME
    # =========================================================================

    async def try_consume(self, user_id: str, now: Optional[datetime] = None) -> ConsumeResult:
        """
        Consume one image credit for the current month.

        Returns:
            ConsumeResult; quota exhaustion is a result, not an exception

        Raises:
            ProfileNotFoundError: If the user has no profile
            PersistenceUnavailableError: If the store cannot be reached
        """
        now = now or utcnow()
        month, year = period_key(now)

        try:
            async with self._session_factory() as session:
                profile = await self._store.get_profile(session, user_id)
                if profile is None:
                    raise ProfileNotFoundError(user_id)
                tier = PlanTier(profile.plan)
                snapshot_credits = profile.credits_remaining
                usage = None
                if tier == PlanTier.CANCELLED:
                    usage = await self._store.get_usage(session, user_id, month, year)

            if tier == PlanTier.CANCELLED:
                remaining = usage.remaining if usage else snapshot_credits
                logger.info(f"[LEDGER] Consume refused for {user_id}: subscription cancelled")
                return ConsumeResult(False, remaining, ConsumeReason.SUBSCRIPTION_CANCELLED)

            allocation = self._catalog.credits_for_tier(tier)

            async with session_scope(self._session_factory) as session:
                # Seed first: the write lock is taken before anything is read
                await self._seed_period(session, user_id, month, year, allocation)

                # The tier read above may be outdated by a cancellation
                # committed since; the profile is checked again by the UPDATE
                not_cancelled = (
                    select(UserProfile.user_id)
                    .where(
                        UserProfile.user_id == user_id,
                        UserProfile.plan != PlanTier.CANCELLED.value,
                    )
                )
                result = await session.execute(
                    update(UsageRecord)
                    .where(
                        UsageRecord.user_id == user_id,
                        UsageRecord.month == month,
                        UsageRecord.year == year,
                        UsageRecord.images_processed < UsageRecord.images_limit,
                        UsageRecord.user_id.in_(not_cancelled),
                    )
                    .values(images_processed=UsageRecord.images_processed + 1)
                    .returning(UsageRecord.images_processed, UsageRecord.images_limit)
                    .execution_options(synchronize_session=False)
                )
                row = result.first()

                if row is None:
                    usage = await self._store.get_usage(session, user_id, month, year)
                    profile = await self._store.get_profile(session, user_id)
                    if profile is not None and profile.plan == PlanTier.CANCELLED.value:
                        remaining = usage.remaining if usage else profile.credits_remaining
                        logger.info(f"[LEDGER] Consume refused for {user_id}: subscription cancelled")
                        return ConsumeResult(False, remaining, ConsumeReason.SUBSCRIPTION_CANCELLED)
                    remaining = usage.remaining if usage else 0
                    logger.info(
                        f"[LEDGER] Quota exhausted for {user_id} "
                        f"({usage.images_processed if usage else 0}/{usage.images_limit if usage else 0})"
                    )
                    return ConsumeResult(False, remaining, ConsumeReason.QUOTA_EXHAUSTED)

                processed, limit = row
                remaining = max(0, limit - processed)
                await self._store.update_profile(session, user_id, credits_remaining=remaining)

            logger.debug(f"[LEDGER] Granted 1 image to {user_id}, {remaining} remaining")
            return ConsumeResult(True, remaining, ConsumeReason.GRANTED)

        except SQLAlchemyError as e:
            logger.error(f"[LEDGER] Store failure consuming for {user_id}: {e}")
            raise PersistenceUnavailableError(
                "Usage could not be recorded", operation="try_consume"
            ) from e

    async def _seed_period(
        self,
        session: AsyncSession,
        user_id: str,
        month: int,
        year: int,
        allocation: int,
    ) -> None:
        stmt = dialect_insert(session, UsageRecord).values(
            user_id=user_id,
            month=month,
            year=year,
            images_processed=0,
            images_limit=allocation,
        )
        await session.execute(
            stmt.on_conflict_do_nothing(
                index_elements=[UsageRecord.user_id, UsageRecord.month, UsageRecord.year]
            )
        )

    # =========================================================================
    # READ
    # =========================================================================

    async def get_usage(self, user_id: str, now: Optional[datetime] = None) -> UsageSnapshot:
        """
        Current month's usage without seeding.

        A user with no record yet reports zero processed against the plan
        allocation that would be seeded.
        """
        now = now or utcnow()
        month, year = period_key(now)

        try:
            async with self._session_factory() as session:
                profile = await self._store.get_profile(session, user_id)
                if profile is None:
                    raise ProfileNotFoundError(user_id)
                usage = await self._store.get_usage(session, user_id, month, year)
        except SQLAlchemyError as e:
            raise PersistenceUnavailableError(
                "Usage could not be read", operation="get_usage"
            ) from e

        if usage is not None:
            return usage
        return UsageSnapshot(
            user_id=user_id,
            month=month,
            year=year,
            images_processed=0,
            images_limit=self._catalog.credits_for_tier(PlanTier(profile.plan)),
        )

    # =========================================================================
    # LIMIT REVISIONS
    # =========================================================================

    async def set_period_limit(
        self,
        session: AsyncSession,
        user_id: str,
        limit: int,
        period_end: Optional[int],
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> Optional[UsageSnapshot]:
        """
        Set the current month's limit inside the caller's transaction.

        The write is applied only when `period_end` is not older than the
        period end that last wrote the limit, so a delayed event for an old
        period cannot undo a newer reset. `force` skips that check (manual
        correction). `images_processed` is never modified.

        Returns:
            The resulting usage, or None when the revision was ignored
        """
        now = now or utcnow()
        month, year = period_key(now)

        stmt = dialect_insert(session, UsageRecord).values(
            user_id=user_id,
            month=month,
            year=year,
            images_processed=0,
            images_limit=limit,
            limit_period_end=period_end,
        )
        guard = None
        if not force:
            guard = or_(
                UsageRecord.limit_period_end.is_(None),
                UsageRecord.limit_period_end <= stmt.excluded.limit_period_end,
            )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UsageRecord.user_id, UsageRecord.month, UsageRecord.year],
            set_={
                'images_limit': stmt.excluded.images_limit,
                'limit_period_end': func.coalesce(
                    stmt.excluded.limit_period_end, UsageRecord.limit_period_end
                ),
                'updated_at': now,
            },
            where=guard,
        ).returning(
            UsageRecord.images_processed,
            UsageRecord.images_limit,
            UsageRecord.limit_period_end,
        )

        row = (await session.execute(stmt)).first()
        if row is None:
            logger.info(
                f"[LEDGER] Ignored limit revision for {user_id} "
                f"(period_end={period_end} is older than the stored one)"
            )
            return None

        processed, new_limit, stored_period_end = row
        logger.info(f"[LEDGER] Limit for {user_id} {month}/{year} set to {new_limit}")
        return UsageSnapshot(
            user_id=user_id,
            month=month,
            year=year,
            images_processed=processed,
            images_limit=new_limit,
            limit_period_end=stored_period_end,
        )

    async def current_usage(
        self, session: AsyncSession, user_id: str, now: Optional[datetime] = None
    ) -> Optional[UsageSnapshot]:
        """Current month's usage inside the caller's transaction."""
        month, year = period_key(now or utcnow())
        return await self._store.get_usage(session, user_id, month, year)
