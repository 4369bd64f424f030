"""
Entitlement Store

Every read and write of the entitlement tables goes through here. Methods
take the caller's session and never commit; transaction boundaries belong to
the component driving the operation (webhook processor, ledger, reconciler).
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from enhpix.database.db import dialect_insert
from enhpix.src.entitlements.domain.subscription import SubscriptionStatus
from enhpix.src.entitlements.domain.usage import UsageSnapshot
from enhpix.src.entitlements.store.models import (
    CancelledUser,
    SubscriptionRecord,
    UsageRecord,
    UserProfile,
)

logger = logging.getLogger(__name__)


class EntitlementStore:

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------
    async def get_profile(self, session: AsyncSession, user_id: str) -> Optional[UserProfile]:
        return await session.get(UserProfile, user_id)

    async def get_profile_by_email(self, session: AsyncSession, email: str) -> Optional[UserProfile]:
        result = await session.execute(
            select(UserProfile).where(func.lower(UserProfile.email) == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def get_profile_by_customer(self, session: AsyncSession, customer_id: str) -> Optional[UserProfile]:
        result = await session.execute(
            select(UserProfile).where(UserProfile.stripe_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    async def list_profiles_with_customer(self, session: AsyncSession) -> List[UserProfile]:
        result = await session.execute(
            select(UserProfile)
            .where(UserProfile.stripe_customer_id.is_not(None))
            .order_by(UserProfile.created_at)
        )
        return list(result.scalars().all())

    async def ensure_profile(
        self,
        session: AsyncSession,
        user_id: str,
        email: str,
        full_name: Optional[str] = None,
        plan: str = 'free',
        credits_remaining: int = 0,
    ) -> None:
        """Insert a profile unless one already exists for `user_id`."""
        stmt = dialect_insert(session, UserProfile).values(
            user_id=user_id,
            email=email,
            full_name=full_name,
            plan=plan,
            credits_remaining=credits_remaining,
        )
        await session.execute(stmt.on_conflict_do_nothing(index_elements=[UserProfile.user_id]))

    async def link_customer(self, session: AsyncSession, user_id: str, customer_id: str) -> None:
        await session.execute(
            update(UserProfile)
            .where(UserProfile.user_id == user_id)
            .values(stripe_customer_id=customer_id)
            .execution_options(synchronize_session=False)
        )

    async def update_profile(self, session: AsyncSession, user_id: str, **values) -> None:
        await session.execute(
            update(UserProfile).where(UserProfile.user_id == user_id).values(**values)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def get_subscription(
        self, session: AsyncSession, stripe_subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        result = await session.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.stripe_subscription_id == stripe_subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_current_subscription(
        self, session: AsyncSession, user_id: str
    ) -> Optional[SubscriptionRecord]:
        """Latest non-cancelled record of the user, if any."""
        result = await session.execute(
            select(SubscriptionRecord)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.status != SubscriptionStatus.CANCELLED.value,
            )
            .order_by(SubscriptionRecord.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_latest_subscription(
        self, session: AsyncSession, user_id: str
    ) -> Optional[SubscriptionRecord]:
        result = await session.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def insert_subscription(self, session: AsyncSession, **values) -> bool:
        """
        Insert a subscription record keyed on its Stripe id.

        Returns:
            False when a record with that Stripe id already exists
        """
        stmt = (
            dialect_insert(session, SubscriptionRecord)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[SubscriptionRecord.stripe_subscription_id])
            .returning(SubscriptionRecord.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def apply_subscription_event(
        self,
        session: AsyncSession,
        stripe_subscription_id: str,
        event_created: Optional[int],
        **values,
    ) -> bool:
        """
        Update a record unless a newer event has already been applied to it.

        Returns:
            False when the record is missing or the event is stale
        """
        stmt = update(SubscriptionRecord).where(
            SubscriptionRecord.stripe_subscription_id == stripe_subscription_id
        )
        if event_created is not None:
            stmt = stmt.where(
                or_(
                    SubscriptionRecord.last_event_at.is_(None),
                    SubscriptionRecord.last_event_at <= event_created,
                )
            )
            values['last_event_at'] = event_created
        result = await session.execute(
            stmt.values(**values).returning(SubscriptionRecord.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def has_newer_live_subscription(
        self,
        session: AsyncSession,
        user_id: str,
        stripe_subscription_id: str,
        stripe_created: Optional[int],
    ) -> bool:
        """True when another live record of the user was created after `stripe_created`."""
        if stripe_created is None:
            return False
        result = await session.execute(
            select(SubscriptionRecord.id)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.stripe_subscription_id != stripe_subscription_id,
                SubscriptionRecord.status != SubscriptionStatus.CANCELLED.value,
                SubscriptionRecord.stripe_created > stripe_created,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def cancel_other_subscriptions(
        self,
        session: AsyncSession,
        user_id: str,
        keep_stripe_subscription_id: str,
        cancelled_at: datetime,
    ) -> int:
        """Cancel every other live record of the user. Returns how many changed."""
        result = await session.execute(
            update(SubscriptionRecord)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.stripe_subscription_id != keep_stripe_subscription_id,
                SubscriptionRecord.status != SubscriptionStatus.CANCELLED.value,
            )
            .values(status=SubscriptionStatus.CANCELLED.value, cancelled_at=cancelled_at)
            .returning(SubscriptionRecord.id)
            .execution_options(synchronize_session=False)
        )
        return len(result.all())

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------
    async def get_usage(
        self, session: AsyncSession, user_id: str, month: int, year: int
    ) -> Optional[UsageSnapshot]:
        result = await session.execute(
            select(UsageRecord).where(
                UsageRecord.user_id == user_id,
                UsageRecord.month == month,
                UsageRecord.year == year,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return UsageSnapshot(
            user_id=row.user_id,
            month=row.month,
            year=row.year,
            images_processed=row.images_processed,
            images_limit=row.images_limit,
            limit_period_end=row.limit_period_end,
        )

    # ------------------------------------------------------------------
    # Cancellation tracking
    # ------------------------------------------------------------------
    async def add_cancelled_user(self, session: AsyncSession, **values) -> None:
        session.add(CancelledUser(**values))
        await session.flush()

    async def list_cancelled_users(self, session: AsyncSession, user_id: str) -> List[CancelledUser]:
        result = await session.execute(
            select(CancelledUser)
            .where(CancelledUser.user_id == user_id)
            .order_by(CancelledUser.cancelled_at)
        )
        return list(result.scalars().all())
