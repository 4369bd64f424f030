"""
Shared fixtures for the entitlement engine tests.

Each test gets its own SQLite database file so upserts and conditional
updates run against a real SQL engine. Stripe is replaced by a mocked
StripeClient; webhook payloads are signed with the test secret exactly the
way Stripe signs them.
"""

import hashlib
import hmac
import json
import time
import uuid
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from enhpix.core.conf import Settings
from enhpix.core.registrar import register_app
from enhpix.core.security.jwt import create_access_token
from enhpix.database.db import create_engine_from_settings, create_tables, session_scope
from enhpix.src.entitlements.container import EntitlementContainer
from enhpix.src.entitlements.domain.usage import period_key, utcnow
from enhpix.src.entitlements.external.stripe.client import StripeClient
from enhpix.src.entitlements.store.models import SubscriptionRecord, UsageRecord, UserProfile

WEBHOOK_SECRET = 'whsec_test_0123456789abcdef'
TOKEN_SECRET = 'test-token-secret-0123456789abcdef-0123456789'
WEBHOOK_PATH = '/api/v1/billing/webhook'

PERIOD_START = 1767225600  # 2026-01-01T00:00:00Z
PERIOD_END = 1769904000  # 2026-02-01T00:00:00Z


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT='test',
        DATABASE_URL=f'sqlite+aiosqlite:///{tmp_path}/entitlements.db',
        TOKEN_SECRET_KEY=TOKEN_SECRET,
        STRIPE_SECRET_KEY='sk_test_123',
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        CORS_ALLOWED_ORIGINS=[],
        ENTITLEMENT_TASK_MAX_ATTEMPTS=3,
    )


@pytest.fixture
async def engine(settings):
    engine = create_engine_from_settings(settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def stripe_client():
    """StripeClient double; tests set return values per call."""
    client = MagicMock(spec=StripeClient)
    client.configured = True
    client.retrieve_customer = AsyncMock(return_value={'id': 'cus_unknown', 'email': None})
    client.list_active_subscriptions = AsyncMock(return_value=[])
    client.retrieve_subscription = AsyncMock(return_value={'status': 'active'})
    client.cancel_at_period_end = AsyncMock(return_value={'status': 'active', 'cancel_at_period_end': True})
    return client


@pytest.fixture
def container(settings, engine, stripe_client) -> EntitlementContainer:
    return EntitlementContainer.build(settings, engine=engine, stripe_client=stripe_client)


@pytest.fixture
def app(settings, container):
    app = register_app(settings)
    # ASGITransport does not run the lifespan
    app.state.container = container
    return app


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as c:
        yield c


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@pytest.fixture
def auth_headers(settings):
    def _headers(user_id: str, role: Optional[str] = None) -> dict:
        token = create_access_token(user_id, settings, role=role)
        return {'Authorization': f'Bearer {token}'}
    return _headers


@pytest.fixture
def admin_headers(auth_headers):
    return auth_headers('admin-1', role='admin')


# ---------------------------------------------------------------------------
# Stripe payloads
# ---------------------------------------------------------------------------

def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for `payload`."""
    timestamp = timestamp or int(time.time())
    signed = f'{timestamp}.{payload}'.encode('utf-8')
    signature = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


@pytest.fixture
def signer():
    return sign_payload


@pytest.fixture
def make_subscription():
    def _subscription(
        sub_id: str = 'sub_123',
        customer: str = 'cus_123',
        price: str = 'price_basic_monthly',
        status: str = 'active',
        period_start: int = PERIOD_START,
        period_end: int = PERIOD_END,
        cancel_at_period_end: bool = False,
        metadata: Optional[dict] = None,
    ) -> dict:
        return {
            'id': sub_id,
            'object': 'subscription',
            'customer': customer,
            'status': status,
            'cancel_at_period_end': cancel_at_period_end,
            'current_period_start': period_start,
            'current_period_end': period_end,
            'metadata': metadata or {},
            'items': {
                'object': 'list',
                'data': [{'id': f'si_{sub_id}', 'price': {'id': price}}],
            },
        }
    return _subscription


@pytest.fixture
def make_event():
    def _event(event_type: str, obj: dict, event_id: Optional[str] = None, created: Optional[int] = None) -> dict:
        return {
            'id': event_id or f'evt_{uuid.uuid4().hex[:20]}',
            'object': 'event',
            'type': event_type,
            'created': created or int(time.time()),
            'data': {'object': obj},
        }
    return _event


@pytest.fixture
def post_event(client):
    """POST a signed event to the webhook endpoint."""
    async def _post(event: dict):
        payload = json.dumps(event)
        return await client.post(
            WEBHOOK_PATH,
            content=payload,
            headers={'stripe-signature': sign_payload(payload), 'content-type': 'application/json'},
        )
    return _post


@pytest.fixture
def deliver(container):
    """Run a signed event through the webhook service directly."""
    async def _deliver(event: dict) -> dict:
        payload = json.dumps(event)
        return await container.webhook_service.process_stripe_webhook(
            payload.encode('utf-8'), sign_payload(payload)
        )
    return _deliver


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def seed_profile(container):
    async def _seed(
        user_id: str = 'user-1',
        email: str = 'user1@example.com',
        plan: str = 'free',
        credits_remaining: int = 0,
        customer_id: Optional[str] = None,
    ) -> str:
        async with session_scope(container.session_factory) as session:
            await container.store.ensure_profile(
                session, user_id=user_id, email=email, plan=plan, credits_remaining=credits_remaining
            )
            if customer_id:
                await container.store.link_customer(session, user_id, customer_id)
        return user_id
    return _seed


@pytest.fixture
def seed_usage(container):
    async def _seed(user_id: str, processed: int, limit: int) -> None:
        month, year = period_key(utcnow())
        async with session_scope(container.session_factory) as session:
            session.add(UsageRecord(
                user_id=user_id, month=month, year=year,
                images_processed=processed, images_limit=limit,
            ))
    return _seed


@pytest.fixture
def load_profile(container):
    async def _load(user_id: str) -> Optional[UserProfile]:
        async with container.session_factory() as session:
            return await session.get(UserProfile, user_id)
    return _load


@pytest.fixture
def load_usage(container):
    async def _load(user_id: str):
        month, year = period_key(utcnow())
        async with container.session_factory() as session:
            return await container.store.get_usage(session, user_id, month, year)
    return _load


@pytest.fixture
def load_subscription(container):
    async def _load(stripe_subscription_id: str) -> Optional[SubscriptionRecord]:
        async with container.session_factory() as session:
            result = await session.execute(
                select(SubscriptionRecord)
                .where(SubscriptionRecord.stripe_subscription_id == stripe_subscription_id)
            )
            return result.scalar_one_or_none()
    return _load
