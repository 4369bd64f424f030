"""
Entitlement Task Queue

Side effects of a webhook or cancellation (tracking a cancellation, sending a
password-setup link) are written to `entitlement_tasks` in the same
transaction as the mutation that caused them, then executed afterwards.
A failing task stays visible with its error and is retried until it runs out
of attempts.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enhpix.database.db import session_scope
from enhpix.src.entitlements.store.models import EntitlementTask
from enhpix.src.entitlements.store.repository import EntitlementStore
from enhpix.src.entitlements.tasks.identity import IdentityProvisioner

logger = logging.getLogger(__name__)

TASK_TRACK_CANCELLATION = 'track_cancellation'
TASK_PASSWORD_SETUP = 'password_setup'

STATUS_PENDING = 'pending'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'


class EntitlementTaskQueue:
    """
    Usage:
        await task_queue.enqueue(session, TASK_TRACK_CANCELLATION, {...})
        ...
        results = await task_queue.run_pending()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: EntitlementStore,
        identity: IdentityProvisioner,
        max_attempts: int = 5,
        batch_size: int = 50,
    ):
        self._session_factory = session_factory
        self._store = store
        self._identity = identity
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self._handlers: Dict[str, Callable[[AsyncSession, Dict[str, Any]], Awaitable[None]]] = {
            TASK_TRACK_CANCELLATION: self._track_cancellation,
            TASK_PASSWORD_SETUP: self._password_setup,
        }

    async def enqueue(self, session: AsyncSession, kind: str, payload: Dict[str, Any]) -> str:
        """Queue a task inside the caller's transaction."""
        if kind not in self._handlers:
            raise ValueError(f"Unknown entitlement task kind: {kind}")
        task = EntitlementTask(kind=kind, payload=payload, status=STATUS_PENDING, attempts=0)
        session.add(task)
        await session.flush()
        logger.debug(f"[TASKS] Queued {kind} task {task.id}")
        return task.id

    async def run_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Execute pending tasks once each.

        Returns:
            Dict with processed, completed, failed and retrying counts
        """
        results = {'processed': 0, 'completed': 0, 'failed': 0, 'retrying': 0}

        async with self._session_factory() as session:
            rows = await session.execute(
                select(EntitlementTask.id, EntitlementTask.attempts)
                .where(EntitlementTask.status == STATUS_PENDING)
                .order_by(EntitlementTask.created_at)
                .limit(limit or self.batch_size)
            )
            pending = rows.all()

        for task_id, attempts in pending:
            outcome = await self._run_task(task_id, attempts)
            if outcome is None:
                continue
            results['processed'] += 1
            results[outcome] += 1

        if results['processed']:
            logger.info(f"[TASKS] Run finished: {results}")
        return results

    async def _run_task(self, task_id: str, seen_attempts: int) -> Optional[str]:
        now = datetime.now(timezone.utc)
        try:
            async with session_scope(self._session_factory) as session:
                # Claim by bumping attempts; a concurrent runner loses the race
                claimed = await session.execute(
                    update(EntitlementTask)
                    .where(
                        EntitlementTask.id == task_id,
                        EntitlementTask.status == STATUS_PENDING,
                        EntitlementTask.attempts == seen_attempts,
                    )
                    .values(attempts=seen_attempts + 1, updated_at=now)
                    .returning(EntitlementTask.kind, EntitlementTask.payload)
                    .execution_options(synchronize_session=False)
                )
                row = claimed.first()
                if row is None:
                    return None
                kind, payload = row

                await self._handlers[kind](session, payload)

                await session.execute(
                    update(EntitlementTask)
                    .where(EntitlementTask.id == task_id)
                    .values(status=STATUS_COMPLETED, last_error=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            logger.info(f"[TASKS] Completed {kind} task {task_id}")
            return 'completed'

        except Exception as e:
            attempts = seen_attempts + 1
            status = STATUS_FAILED if attempts >= self.max_attempts else STATUS_PENDING
            logger.error(f"[TASKS] Task {task_id} failed (attempt {attempts}): {e}", exc_info=True)
            async with session_scope(self._session_factory) as session:
                await session.execute(
                    update(EntitlementTask)
                    .where(EntitlementTask.id == task_id)
                    .values(
                        status=status,
                        attempts=attempts,
                        last_error=f"{type(e).__name__}: {str(e)[:900]}",
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
            return 'failed' if status == STATUS_FAILED else 'retrying'

    # -------------------------------------------------------------------------
    # Task implementations
    # -------------------------------------------------------------------------

    async def _track_cancellation(self, session: AsyncSession, payload: Dict[str, Any]) -> None:
        await self._store.add_cancelled_user(
            session,
            user_id=payload['user_id'],
            email=payload.get('email'),
            plan=payload.get('plan'),
            credits_remaining=payload.get('credits_remaining') or 0,
            reason=payload.get('reason'),
            stripe_subscription_id=payload.get('stripe_subscription_id'),
        )

    async def _password_setup(self, session: AsyncSession, payload: Dict[str, Any]) -> None:
        await self._identity.send_password_setup(payload['email'], user_id=payload.get('user_id'))
