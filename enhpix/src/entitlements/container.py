"""
Entitlement Container

Builds every collaborator of the engine once, from settings, and keeps them
together. The application lifespan owns one container; tests build their
own with a SQLite engine and a fake Stripe client.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from enhpix.core.conf import Settings
from enhpix.database.db import create_engine_from_settings, create_session_factory
from enhpix.src.entitlements.external.stripe.client import StripeClient
from enhpix.src.entitlements.external.stripe.handlers import (
    CheckoutHandler,
    CustomerResolver,
    InvoiceHandler,
    SubscriptionHandler,
)
from enhpix.src.entitlements.external.stripe.webhook_lock import WebhookEventLog
from enhpix.src.entitlements.external.stripe.webhooks import WebhookService
from enhpix.src.entitlements.ledger.manager import CreditLedger
from enhpix.src.entitlements.reconciliation.lifecycle import SubscriptionLifecycle
from enhpix.src.entitlements.reconciliation.reconciler import Reconciler
from enhpix.src.entitlements.shared.config import PlanCatalog
from enhpix.src.entitlements.store.repository import EntitlementStore
from enhpix.src.entitlements.tasks.identity import IdentityProvisioner, LocalIdentityProvisioner
from enhpix.src.entitlements.tasks.queue import EntitlementTaskQueue

logger = logging.getLogger(__name__)


@dataclass
class EntitlementContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    catalog: PlanCatalog
    store: EntitlementStore
    stripe_client: StripeClient
    ledger: CreditLedger
    task_queue: EntitlementTaskQueue
    event_log: WebhookEventLog
    webhook_service: WebhookService
    reconciler: Reconciler
    lifecycle: SubscriptionLifecycle

    @classmethod
    def build(
        cls,
        settings: Settings,
        engine: Optional[AsyncEngine] = None,
        stripe_client: Optional[StripeClient] = None,
        identity: Optional[IdentityProvisioner] = None,
    ) -> 'EntitlementContainer':
        """
        Wire the engine.

        Args:
            settings: Application settings
            engine: Existing engine (default: built from DATABASE_URL)
            stripe_client: Stripe client (default: built from settings)
            identity: Identity provider (default: LocalIdentityProvisioner)
        """
        engine = engine or create_engine_from_settings(settings)
        session_factory = create_session_factory(engine)
        catalog = PlanCatalog.from_settings(settings)
        store = EntitlementStore()
        stripe_client = stripe_client or StripeClient.from_settings(settings)
        identity = identity or LocalIdentityProvisioner(settings.SITE_URL)

        ledger = CreditLedger(session_factory, store, catalog)
        task_queue = EntitlementTaskQueue(
            session_factory,
            store,
            identity,
            max_attempts=settings.ENTITLEMENT_TASK_MAX_ATTEMPTS,
            batch_size=settings.ENTITLEMENT_TASK_BATCH_SIZE,
        )
        event_log = WebhookEventLog(session_factory)
        resolver = CustomerResolver(store, stripe_client)

        webhook_service = WebhookService(
            session_factory,
            event_log,
            CheckoutHandler(store, catalog, identity, task_queue),
            SubscriptionHandler(store, ledger, catalog, resolver, task_queue),
            InvoiceHandler(store),
            task_queue,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
        )
        reconciler = Reconciler(session_factory, store, ledger, catalog, stripe_client, event_log)
        lifecycle = SubscriptionLifecycle(session_factory, store, stripe_client, task_queue)

        if not stripe_client.configured:
            logger.warning("[STRIPE CLIENT] STRIPE_SECRET_KEY not set, reconciliation reads will fail")

        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            catalog=catalog,
            store=store,
            stripe_client=stripe_client,
            ledger=ledger,
            task_queue=task_queue,
            event_log=event_log,
            webhook_service=webhook_service,
            reconciler=reconciler,
            lifecycle=lifecycle,
        )

    async def close(self) -> None:
        await self.engine.dispose()
