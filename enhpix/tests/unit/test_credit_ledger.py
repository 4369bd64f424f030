"""Tests for the credit ledger against a real SQLite store."""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from enhpix.database.db import session_scope
from enhpix.src.entitlements.domain.usage import ConsumeReason
from enhpix.src.entitlements.shared.exceptions import ProfileNotFoundError
from enhpix.src.entitlements.store.models import UsageRecord


class TestTryConsume:
    """Tests for CreditLedger.try_consume."""

    async def test_exhausted_quota_is_refused_and_unchanged(self, container, seed_profile, seed_usage, load_usage):
        """150 of 150 used: refused with quota_exhausted, record untouched."""
        user_id = await seed_profile(plan='basic', credits_remaining=0)
        await seed_usage(user_id, processed=150, limit=150)

        result = await container.ledger.try_consume(user_id)

        assert result.granted is False
        assert result.remaining == 0
        assert result.reason == ConsumeReason.QUOTA_EXHAUSTED
        usage = await load_usage(user_id)
        assert (usage.images_processed, usage.images_limit) == (150, 150)

    async def test_grant_increments_and_updates_snapshot(self, container, seed_profile, seed_usage, load_usage, load_profile):
        user_id = await seed_profile(plan='pro', credits_remaining=10)
        await seed_usage(user_id, processed=390, limit=400)

        result = await container.ledger.try_consume(user_id)

        assert result.granted is True
        assert result.remaining == 9
        assert (await load_usage(user_id)).images_processed == 391
        assert (await load_profile(user_id)).credits_remaining == 9

    async def test_cancelled_user_is_refused_with_credits_left(self, container, seed_profile, seed_usage, load_usage):
        user_id = await seed_profile(plan='cancelled', credits_remaining=40)
        await seed_usage(user_id, processed=110, limit=150)

        result = await container.ledger.try_consume(user_id)

        assert result.granted is False
        assert result.reason == ConsumeReason.SUBSCRIPTION_CANCELLED
        assert result.remaining == 40
        assert (await load_usage(user_id)).images_processed == 110

    async def test_cancellation_committed_during_consume_is_refused(self, container, seed_profile, seed_usage,
                                                                    load_usage, monkeypatch):
        user_id = await seed_profile(plan='basic', credits_remaining=50)
        await seed_usage(user_id, processed=100, limit=150)
        seed_period = container.ledger._seed_period

        async def cancel_then_seed(session, *args):
            async with session_scope(container.session_factory) as other:
                await container.store.update_profile(other, user_id, plan='cancelled')
            await seed_period(session, *args)

        monkeypatch.setattr(container.ledger, '_seed_period', cancel_then_seed)

        result = await container.ledger.try_consume(user_id)

        assert result.granted is False
        assert result.reason == ConsumeReason.SUBSCRIPTION_CANCELLED
        assert result.remaining == 50
        assert (await load_usage(user_id)).images_processed == 100

    async def test_first_call_seeds_plan_allocation(self, container, seed_profile, load_usage):
        user_id = await seed_profile(plan='basic')

        assert await load_usage(user_id) is None
        result = await container.ledger.try_consume(user_id)

        assert result.granted is True
        assert result.remaining == 149
        usage = await load_usage(user_id)
        assert (usage.images_processed, usage.images_limit) == (1, 150)

    async def test_free_tier_has_no_allocation(self, container, seed_profile, load_usage):
        user_id = await seed_profile(plan='free')

        result = await container.ledger.try_consume(user_id)

        assert result.reason == ConsumeReason.QUOTA_EXHAUSTED
        usage = await load_usage(user_id)
        assert (usage.images_processed, usage.images_limit) == (0, 0)

    async def test_unknown_user(self, container):
        with pytest.raises(ProfileNotFoundError):
            await container.ledger.try_consume('ghost')

    async def test_new_month_starts_a_new_record(self, container, seed_profile):
        user_id = await seed_profile(plan='basic')
        january = datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc)
        february = datetime(2026, 2, 1, 0, 1, tzinfo=timezone.utc)

        await container.ledger.try_consume(user_id, now=january)
        result = await container.ledger.try_consume(user_id, now=february)

        assert result.remaining == 149
        async with container.session_factory() as session:
            jan = await container.store.get_usage(session, user_id, 1, 2026)
            feb = await container.store.get_usage(session, user_id, 2, 2026)
        assert jan.images_processed == 1
        assert feb.images_processed == 1


class TestConcurrentConsume:
    """Concurrent admission against one usage record."""

    async def test_last_credit_is_granted_once(self, container, seed_profile, seed_usage, load_usage):
        user_id = await seed_profile(plan='basic', credits_remaining=1)
        await seed_usage(user_id, processed=149, limit=150)

        results = await asyncio.gather(*[container.ledger.try_consume(user_id) for _ in range(6)])

        granted = [r for r in results if r.granted]
        assert len(granted) == 1
        assert all(r.reason == ConsumeReason.QUOTA_EXHAUSTED for r in results if not r.granted)
        usage = await load_usage(user_id)
        assert usage.images_processed == 150

    async def test_concurrent_first_calls_seed_once(self, container, seed_profile, load_usage):
        user_id = await seed_profile(plan='basic')

        results = await asyncio.gather(*[container.ledger.try_consume(user_id) for _ in range(5)])

        assert all(r.granted for r in results)
        async with container.session_factory() as session:
            count = await session.scalar(
                select(func.count()).select_from(UsageRecord).where(UsageRecord.user_id == user_id)
            )
        assert count == 1
        usage = await load_usage(user_id)
        assert (usage.images_processed, usage.images_limit) == (5, 150)


class TestSetPeriodLimit:
    """Limit revisions and the period-end guard."""

    async def _set(self, container, user_id, limit, period_end, force=False):
        async with session_scope(container.session_factory) as session:
            return await container.ledger.set_period_limit(
                session, user_id, limit, period_end, force=force
            )

    async def test_revision_keeps_processed(self, container, seed_profile, seed_usage):
        user_id = await seed_profile(plan='basic')
        await seed_usage(user_id, processed=120, limit=150)

        usage = await self._set(container, user_id, 400, 2000)

        assert (usage.images_processed, usage.images_limit) == (120, 400)
        assert usage.remaining == 280
        assert usage.limit_period_end == 2000

    async def test_older_period_cannot_overwrite_newer(self, container, seed_profile, load_usage):
        user_id = await seed_profile(plan='basic')
        await self._set(container, user_id, 400, 2000)

        ignored = await self._set(container, user_id, 150, 1000)

        assert ignored is None
        usage = await load_usage(user_id)
        assert (usage.images_limit, usage.limit_period_end) == (400, 2000)

    async def test_same_period_revision_applies(self, container, seed_profile):
        user_id = await seed_profile(plan='basic')
        await self._set(container, user_id, 150, 2000)

        usage = await self._set(container, user_id, 1300, 2000)

        assert usage.images_limit == 1300

    async def test_forced_revision_keeps_period_end(self, container, seed_profile):
        user_id = await seed_profile(plan='basic')
        await self._set(container, user_id, 150, 2000)

        usage = await self._set(container, user_id, 400, None, force=True)

        assert usage.images_limit == 400
        assert usage.limit_period_end == 2000


class TestGetUsage:

    async def test_without_record_reports_allocation(self, container, seed_profile, load_usage):
        user_id = await seed_profile(plan='premium')

        usage = await container.ledger.get_usage(user_id)

        assert (usage.images_processed, usage.images_limit, usage.remaining) == (0, 1300, 1300)
        assert await load_usage(user_id) is None
