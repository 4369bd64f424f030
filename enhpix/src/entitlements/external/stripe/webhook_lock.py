"""
Webhook Event Log

Deduplicates Stripe deliveries and records what happened to each event.
An event that reached `completed` or `skipped` is never handled again;
`failed` events and events stuck in `processing` may be retried.

Skipped events double as the list of reconciliation candidates.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enhpix.database.db import dialect_insert, session_scope
from enhpix.src.entitlements.store.models import WebhookEvent

logger = logging.getLogger(__name__)

STATUS_PROCESSING = 'processing'
STATUS_COMPLETED = 'completed'
STATUS_SKIPPED = 'skipped'
STATUS_FAILED = 'failed'

# A delivery left in `processing` longer than this is considered abandoned
PROCESSING_TIMEOUT = timedelta(minutes=5)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WebhookEventLog:
    """
    Distributed-safe webhook deduplication backed by `webhook_events`.

    Usage:
        can_process, reason = await event_log.check_and_mark_processing(event_id, event_type)
        if not can_process:
            return
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def check_and_mark_processing(
        self,
        event_id: str,
        event_type: str,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Claim an event for processing.

        Returns:
            Tuple of (can_process, reason)
        """
        now = datetime.now(timezone.utc)

        async with session_scope(self._session_factory) as session:
            stmt = (
                dialect_insert(session, WebhookEvent)
                .values(
                    event_id=event_id,
                    event_type=event_type,
                    status=STATUS_PROCESSING,
                    customer_id=customer_id,
                    subscription_id=subscription_id,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=[WebhookEvent.event_id])
                .returning(WebhookEvent.event_id)
            )
            if (await session.execute(stmt)).scalar_one_or_none() is not None:
                return True, "Processing"

            existing = await session.get(WebhookEvent, event_id)
            if existing.status == STATUS_COMPLETED:
                return False, "Event already processed"
            if existing.status == STATUS_SKIPPED:
                return False, "Event already skipped"
            if existing.status == STATUS_PROCESSING:
                age = now - _as_utc(existing.updated_at)
                if age < PROCESSING_TIMEOUT:
                    return False, "Event currently being processed"
                logger.warning(f"[WEBHOOK LOCK] Event {event_id} stuck in processing, allowing retry")
            else:
                logger.info(f"[WEBHOOK LOCK] Retrying failed event {event_id}")

            # Only one retrying delivery wins the claim
            claim = update(WebhookEvent).where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.status == existing.status,
            )
            if existing.status == STATUS_PROCESSING:
                claim = claim.where(WebhookEvent.updated_at <= now - PROCESSING_TIMEOUT)
            result = await session.execute(
                claim
                .values(status=STATUS_PROCESSING, detail=None, updated_at=now)
                .returning(WebhookEvent.event_id)
                .execution_options(synchronize_session=False)
            )
            if result.scalar_one_or_none() is None:
                return False, "Event claimed by another delivery"
            return True, "Retrying"

    async def mark_completed(self, session: AsyncSession, event_id: str) -> None:
        """Mark an event completed inside the handler's transaction."""
        await session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(status=STATUS_COMPLETED, detail=None, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        logger.debug(f"[WEBHOOK LOCK] Marked event {event_id} as completed")

    async def mark_skipped(self, event_id: str, reason: str) -> None:
        await self._set_status(event_id, STATUS_SKIPPED, reason)
        logger.warning(f"[WEBHOOK LOCK] Marked event {event_id} as skipped: {reason}")

    async def mark_failed(self, event_id: str, error_message: str) -> None:
        await self._set_status(event_id, STATUS_FAILED, error_message[:1000])
        logger.warning(f"[WEBHOOK LOCK] Marked event {event_id} as failed: {error_message[:100]}")

    async def _set_status(self, event_id: str, status: str, detail: Optional[str]) -> None:
        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id)
                .values(status=status, detail=detail, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )

    async def get_event_status(self, event_id: str) -> Optional[Dict]:
        async with self._session_factory() as session:
            row = await session.get(WebhookEvent, event_id)
        if row is None:
            return None
        return {
            'event_id': row.event_id,
            'event_type': row.event_type,
            'status': row.status,
            'detail': row.detail,
            'customer_id': row.customer_id,
            'subscription_id': row.subscription_id,
            'updated_at': row.updated_at.isoformat() if row.updated_at else None,
        }

    async def list_skipped(self, limit: int = 100) -> List[WebhookEvent]:
        """Skipped events, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(WebhookEvent.status == STATUS_SKIPPED)
                .order_by(WebhookEvent.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

