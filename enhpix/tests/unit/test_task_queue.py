"""Tests for the entitlement side-effect task queue."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from enhpix.database.db import session_scope
from enhpix.src.entitlements.store.models import EntitlementTask
from enhpix.src.entitlements.tasks.identity import LocalIdentityProvisioner
from enhpix.src.entitlements.tasks.queue import (
    TASK_PASSWORD_SETUP,
    TASK_TRACK_CANCELLATION,
    EntitlementTaskQueue,
)


async def _tasks(container):
    async with container.session_factory() as session:
        return list((await session.execute(select(EntitlementTask))).scalars().all())


class TestEntitlementTaskQueue:

    async def test_track_cancellation_writes_audit_row(self, container, seed_profile):
        user_id = await seed_profile(plan='cancelled', credits_remaining=40)
        async with session_scope(container.session_factory) as session:
            await container.task_queue.enqueue(session, TASK_TRACK_CANCELLATION, {
                'user_id': user_id,
                'email': 'user1@example.com',
                'plan': 'basic',
                'credits_remaining': 40,
                'reason': 'subscription_deleted',
                'stripe_subscription_id': 'sub_1',
            })

        results = await container.task_queue.run_pending()

        assert results == {'processed': 1, 'completed': 1, 'failed': 0, 'retrying': 0}
        async with container.session_factory() as session:
            rows = await container.store.list_cancelled_users(session, user_id)
        assert len(rows) == 1
        assert (rows[0].plan, rows[0].credits_remaining, rows[0].reason) == ('basic', 40, 'subscription_deleted')

    async def test_completed_tasks_do_not_run_again(self, container, seed_profile):
        await seed_profile()
        async with session_scope(container.session_factory) as session:
            await container.task_queue.enqueue(session, TASK_PASSWORD_SETUP, {'user_id': 'user-1', 'email': 'user1@example.com'})

        await container.task_queue.run_pending()
        second = await container.task_queue.run_pending()

        assert second['processed'] == 0

    async def test_unknown_kind_rejected(self, container):
        async with container.session_factory() as session:
            with pytest.raises(ValueError):
                await container.task_queue.enqueue(session, 'send_fax', {})

    async def test_failing_task_is_retried_then_failed(self, container):
        identity = LocalIdentityProvisioner('https://enhpix.test')
        identity.send_password_setup = AsyncMock(side_effect=ConnectionError('smtp unreachable'))
        queue = EntitlementTaskQueue(container.session_factory, container.store, identity, max_attempts=2)
        async with session_scope(container.session_factory) as session:
            await queue.enqueue(session, TASK_PASSWORD_SETUP, {'user_id': 'user-1', 'email': 'user1@example.com'})

        first = await queue.run_pending()
        second = await queue.run_pending()
        third = await queue.run_pending()

        assert first['retrying'] == 1
        assert second['failed'] == 1
        assert third['processed'] == 0
        [task] = await _tasks(container)
        assert task.status == 'failed'
        assert task.attempts == 2
        assert 'smtp unreachable' in task.last_error
        assert identity.send_password_setup.await_count == 2
