"""Integration tests for the Stripe webhook endpoint."""

import json
import time
from unittest.mock import AsyncMock

from sqlalchemy import select

from enhpix.src.entitlements.store.models import EntitlementTask, SubscriptionRecord, UserProfile

WEBHOOK_PATH = '/api/v1/billing/webhook'


class TestWebhookAuthenticity:
    """Deliveries that cannot be verified are rejected with 400."""

    async def test_missing_signature(self, client, make_event, make_subscription):
        payload = json.dumps(make_event('customer.subscription.created', make_subscription()))

        response = await client.post(WEBHOOK_PATH, content=payload)

        assert response.status_code == 400
        assert response.json()['error'] == 'INVALID_SIGNATURE'

    async def test_wrong_secret(self, client, make_event, make_subscription, signer):
        payload = json.dumps(make_event('customer.subscription.created', make_subscription()))

        response = await client.post(
            WEBHOOK_PATH, content=payload,
            headers={'stripe-signature': signer(payload, secret='whsec_someone_else')},
        )

        assert response.status_code == 400

    async def test_tampered_payload(self, client, make_event, make_subscription, signer):
        payload = json.dumps(make_event('customer.subscription.created', make_subscription()))
        tampered = payload.replace('price_basic_monthly', 'price_premium_monthly')

        response = await client.post(
            WEBHOOK_PATH, content=tampered, headers={'stripe-signature': signer(payload)},
        )

        assert response.status_code == 400

    async def test_expired_timestamp(self, client, make_event, make_subscription, signer):
        payload = json.dumps(make_event('customer.subscription.created', make_subscription()))

        response = await client.post(
            WEBHOOK_PATH, content=payload,
            headers={'stripe-signature': signer(payload, timestamp=int(time.time()) - 3600)},
        )

        assert response.status_code == 400

    async def test_signed_non_event(self, client, signer):
        payload = json.dumps({'hello': 'world'})

        response = await client.post(WEBHOOK_PATH, content=payload, headers={'stripe-signature': signer(payload)})

        assert response.status_code == 400

    async def test_rejected_delivery_records_nothing(self, client, container, make_event, make_subscription):
        event = make_event('customer.subscription.created', make_subscription())

        await client.post(WEBHOOK_PATH, content=json.dumps(event), headers={'stripe-signature': 't=1,v1=00'})

        assert await container.event_log.get_event_status(event['id']) is None

    async def test_only_post_is_allowed(self, client):
        response = await client.get(WEBHOOK_PATH)

        assert response.status_code == 405


class TestSubscriptionEvents:
    """Subscription lifecycle through the endpoint."""

    async def test_created_mirrors_basic_plan(self, post_event, make_event, make_subscription,
                                              seed_profile, load_profile, load_usage, load_subscription):
        """price_basic_monthly on subscription.created: tier basic, limit 150, processed 0."""
        user_id = await seed_profile(customer_id='cus_123')

        response = await post_event(make_event('customer.subscription.created', make_subscription()))

        assert response.status_code == 200
        assert response.json()['status'] == 'processed'
        assert response.json()['outcome'] == 'created'
        profile = await load_profile(user_id)
        assert profile.plan == 'basic'
        assert profile.credits_remaining == 150
        assert profile.current_subscription_id == 'sub_123'
        usage = await load_usage(user_id)
        assert (usage.images_limit, usage.images_processed) == (150, 0)
        record = await load_subscription('sub_123')
        assert (record.status, record.billing_cycle, record.plan) == ('active', 'monthly', 'basic')

    async def test_redelivered_event_is_a_duplicate(self, post_event, make_event, make_subscription, seed_profile):
        await seed_profile(customer_id='cus_123')
        event = make_event('customer.subscription.created', make_subscription())

        await post_event(event)
        response = await post_event(event)

        assert response.status_code == 200
        assert response.json()['status'] == 'duplicate'

    async def test_duplicate_created_seeds_allocation_once(self, container, post_event, make_event,
                                                           make_subscription, seed_profile, load_usage):
        """A second created event for the same subscription does not re-seed the limit."""
        user_id = await seed_profile(customer_id='cus_123')
        await post_event(make_event('customer.subscription.created', make_subscription()))
        for _ in range(3):
            await container.ledger.try_consume(user_id)

        response = await post_event(make_event('customer.subscription.created', make_subscription()))

        assert response.json()['outcome'] == 'duplicate'
        usage = await load_usage(user_id)
        assert (usage.images_processed, usage.images_limit) == (3, 150)

    async def test_new_subscription_supersedes_old(self, post_event, make_event, make_subscription,
                                                   seed_profile, load_profile, load_subscription):
        user_id = await seed_profile(customer_id='cus_123')
        await post_event(make_event('customer.subscription.created', make_subscription()))

        await post_event(make_event(
            'customer.subscription.created',
            make_subscription(sub_id='sub_456', price='price_pro_monthly'),
        ))

        assert (await load_subscription('sub_123')).status == 'cancelled'
        assert (await load_subscription('sub_456')).status == 'active'
        profile = await load_profile(user_id)
        assert (profile.plan, profile.current_subscription_id) == ('pro', 'sub_456')

    async def test_late_older_subscription_does_not_take_over(self, container, post_event, make_event,
                                                              make_subscription, seed_profile, load_profile,
                                                              load_subscription):
        """Newer subscription's created event lands before the older one's."""
        user_id = await seed_profile(customer_id='cus_123')
        await post_event(make_event(
            'customer.subscription.created',
            make_subscription(sub_id='sub_new', price='price_pro_monthly'),
            created=1767300000,
        ))

        late = await post_event(make_event(
            'customer.subscription.created', make_subscription(sub_id='sub_old'), created=1767200000,
        ))
        await post_event(make_event(
            'customer.subscription.deleted', make_subscription(sub_id='sub_old', status='canceled'),
            created=1767400000,
        ))

        assert late.json()['outcome'] == 'superseded'
        assert (await load_subscription('sub_new')).status == 'active'
        assert (await load_subscription('sub_old')).status == 'cancelled'
        profile = await load_profile(user_id)
        assert (profile.plan, profile.current_subscription_id) == ('pro', 'sub_new')
        assert (await container.ledger.try_consume(user_id)).granted is True

    async def test_deleted_cancels_and_blocks_consumption(self, container, post_event, make_event,
                                                          make_subscription, seed_profile, load_profile,
                                                          load_usage):
        """Deleted with 40 images left: tier cancelled, consume refused, credits kept."""
        user_id = await seed_profile(customer_id='cus_123')
        await post_event(make_event('customer.subscription.created', make_subscription()))
        for _ in range(110):
            await container.ledger.try_consume(user_id)

        response = await post_event(make_event('customer.subscription.deleted', make_subscription(status='canceled')))

        assert response.json()['outcome'] == 'cancelled'
        profile = await load_profile(user_id)
        assert profile.plan == 'cancelled'
        assert profile.credits_remaining == 40

        result = await container.ledger.try_consume(user_id)
        assert result.granted is False
        assert result.reason.value == 'subscription_cancelled'
        assert result.remaining == 40
        assert (await load_usage(user_id)).images_processed == 110

    async def test_deleted_tracks_cancellation(self, container, post_event, make_event, make_subscription, seed_profile):
        user_id = await seed_profile(customer_id='cus_123')
        await post_event(make_event('customer.subscription.created', make_subscription()))

        await post_event(make_event('customer.subscription.deleted', make_subscription(status='canceled')))

        async with container.session_factory() as session:
            rows = await container.store.list_cancelled_users(session, user_id)
        assert len(rows) == 1
        assert (rows[0].plan, rows[0].reason, rows[0].stripe_subscription_id) == (
            'basic', 'subscription_deleted', 'sub_123'
        )

    async def test_cancelled_record_is_terminal(self, post_event, make_event, make_subscription,
                                                seed_profile, load_profile, load_subscription):
        user_id = await seed_profile(customer_id='cus_123')
        await post_event(make_event('customer.subscription.created', make_subscription()))
        await post_event(make_event('customer.subscription.deleted', make_subscription(status='canceled')))

        response = await post_event(make_event('customer.subscription.updated', make_subscription()))

        assert response.json()['outcome'] == 'ignored'
        assert (await load_subscription('sub_123')).status == 'cancelled'
        assert (await load_profile(user_id)).plan == 'cancelled'

    async def test_upgrade_resets_limit_keeping_processed(self, container, post_event, make_event,
                                                          make_subscription, seed_profile, load_profile,
                                                          load_usage):
        user_id = await seed_profile(customer_id='cus_123')
        await post_event(make_event('customer.subscription.created', make_subscription()))
        for _ in range(20):
            await container.ledger.try_consume(user_id)

        response = await post_event(make_event(
            'customer.subscription.updated', make_subscription(price='price_pro_monthly'),
        ))

        assert response.json()['outcome'] == 'updated'
        usage = await load_usage(user_id)
        assert (usage.images_processed, usage.images_limit) == (20, 400)
        profile = await load_profile(user_id)
        assert (profile.plan, profile.credits_remaining) == ('pro', 380)

    async def test_stale_update_is_ignored(self, post_event, make_event, make_subscription,
                                           seed_profile, load_subscription):
        await seed_profile(customer_id='cus_123')
        now = int(time.time())
        await post_event(make_event('customer.subscription.created', make_subscription(), created=now))
        await post_event(make_event(
            'customer.subscription.updated', make_subscription(status='past_due'), created=now + 100,
        ))

        response = await post_event(make_event(
            'customer.subscription.updated', make_subscription(status='active'), created=now + 50,
        ))

        assert response.json()['outcome'] == 'stale'
        assert (await load_subscription('sub_123')).status == 'past_due'

    async def test_update_to_canceled_status_cancels(self, post_event, make_event, make_subscription,
                                                     seed_profile, load_profile):
        user_id = await seed_profile(customer_id='cus_123')
        await post_event(make_event('customer.subscription.created', make_subscription()))

        response = await post_event(make_event(
            'customer.subscription.updated', make_subscription(status='canceled'),
        ))

        assert response.json()['outcome'] == 'cancelled'
        assert (await load_profile(user_id)).plan == 'cancelled'


class TestInvoiceEvents:

    def _invoice(self, subscription_id='sub_123', nested=False):
        invoice = {'id': 'in_1', 'object': 'invoice', 'customer': 'cus_123'}
        if nested:
            invoice['parent'] = {'subscription_details': {'subscription': subscription_id}}
        else:
            invoice['subscription'] = subscription_id
        return invoice

    async def test_payment_failed_then_paid(self, post_event, make_event, make_subscription,
                                            seed_profile, load_subscription):
        await seed_profile(customer_id='cus_123')
        now = int(time.time())
        await post_event(make_event('customer.subscription.created', make_subscription(), created=now))

        failed = await post_event(make_event('invoice.payment_failed', self._invoice(), created=now + 10))
        assert failed.json()['outcome'] == 'past_due'
        assert (await load_subscription('sub_123')).status == 'past_due'

        paid = await post_event(make_event('invoice.paid', self._invoice(nested=True), created=now + 20))
        assert paid.json()['outcome'] == 'active'
        assert (await load_subscription('sub_123')).status == 'active'

    async def test_payment_failed_keeps_credits(self, container, post_event, make_event, make_subscription,
                                                seed_profile):
        user_id = await seed_profile(customer_id='cus_123')
        await post_event(make_event('customer.subscription.created', make_subscription()))

        await post_event(make_event('invoice.payment_failed', self._invoice()))

        assert (await container.ledger.try_consume(user_id)).granted is True

    async def test_invoice_without_subscription(self, post_event, make_event):
        response = await post_event(make_event('invoice.paid', {'id': 'in_2', 'customer': 'cus_1'}))

        assert response.json()['outcome'] == 'ignored'

    async def test_unhandled_type_is_acknowledged(self, post_event, make_event):
        response = await post_event(make_event('customer.created', {'id': 'cus_1'}))

        assert response.status_code == 200
        assert response.json()['outcome'] == 'unhandled'


class TestSkippedEvents:
    """Configuration drift and lookup races are acknowledged and recorded."""

    async def test_unknown_price_is_skipped(self, container, post_event, make_event, make_subscription,
                                            seed_profile, load_profile):
        user_id = await seed_profile(customer_id='cus_123')
        event = make_event('customer.subscription.created', make_subscription(price='price_legacy'))

        response = await post_event(event)

        assert response.status_code == 200
        assert response.json() == {
            'received': True, 'event_id': event['id'], 'status': 'skipped', 'reason': 'unknown_price',
        }
        assert (await load_profile(user_id)).plan == 'free'
        assert (await container.event_log.get_event_status(event['id']))['status'] == 'skipped'

    async def test_unlinked_customer_is_skipped_after_one_retry(self, stripe_client, post_event, make_event,
                                                                make_subscription):
        stripe_client.retrieve_customer.return_value = {'id': 'cus_999', 'email': 'stranger@example.com'}

        response = await post_event(make_event(
            'customer.subscription.created', make_subscription(customer='cus_999'),
        ))

        assert response.json()['reason'] == 'user_not_linked'
        assert stripe_client.retrieve_customer.await_count == 2

    async def test_customer_linked_by_email_fallback(self, stripe_client, post_event, make_event,
                                                     make_subscription, seed_profile, load_profile):
        user_id = await seed_profile(email='Buyer@Example.com')
        stripe_client.retrieve_customer.return_value = {'id': 'cus_777', 'email': 'buyer@example.com'}

        response = await post_event(make_event(
            'customer.subscription.created', make_subscription(customer='cus_777'),
        ))

        assert response.json()['outcome'] == 'created'
        profile = await load_profile(user_id)
        assert (profile.stripe_customer_id, profile.plan) == ('cus_777', 'basic')

    async def test_customer_linked_by_metadata(self, stripe_client, post_event, make_event, make_subscription,
                                               seed_profile, load_profile):
        user_id = await seed_profile()

        response = await post_event(make_event(
            'customer.subscription.created',
            make_subscription(customer='cus_555', metadata={'user_id': user_id}),
        ))

        assert response.json()['outcome'] == 'created'
        assert (await load_profile(user_id)).stripe_customer_id == 'cus_555'
        stripe_client.retrieve_customer.assert_not_awaited()

    async def test_stripe_outage_during_fallback_is_skipped(self, stripe_client, post_event, make_event,
                                                            make_subscription):
        from enhpix.src.entitlements.shared.exceptions import ReconciliationSourceError
        stripe_client.retrieve_customer.side_effect = ReconciliationSourceError('down', operation='retrieve_customer')

        response = await post_event(make_event('customer.subscription.created', make_subscription(customer='cus_1')))

        assert response.json()['reason'] == 'user_not_linked'

    async def test_update_for_unknown_subscription_is_skipped(self, post_event, make_event, make_subscription):
        response = await post_event(make_event('customer.subscription.updated', make_subscription(sub_id='sub_x')))

        assert response.json()['reason'] == 'subscription_not_mirrored'

    async def test_skipped_event_becomes_candidate(self, client, post_event, make_event, make_subscription,
                                                   seed_profile, admin_headers):
        user_id = await seed_profile(customer_id='cus_123')
        event = make_event('customer.subscription.created', make_subscription(price='price_legacy'))
        await post_event(event)

        response = await client.get('/api/v1/admin/entitlements/candidates', headers=admin_headers)

        assert response.status_code == 200
        [candidate] = response.json()
        assert candidate['event_id'] == event['id']
        assert candidate['reason'] == 'unknown_price'
        assert candidate['user_id'] == user_id
        assert candidate['subscription_id'] == 'sub_123'


class TestHandlerFailures:

    async def test_handler_error_returns_500_and_marks_failed(self, container, post_event, make_event,
                                                              make_subscription, seed_profile):
        await seed_profile(customer_id='cus_123')
        handler = container.webhook_service._subscriptions
        original = handler.handle_subscription_created
        handler.handle_subscription_created = AsyncMock(side_effect=RuntimeError('boom'))
        event = make_event('customer.subscription.created', make_subscription())

        response = await post_event(event)

        assert response.status_code == 500
        assert response.json()['received'] is False
        status = await container.event_log.get_event_status(event['id'])
        assert status['status'] == 'failed'
        assert 'boom' in status['detail']

        # Stripe redelivers once the failure is gone
        handler.handle_subscription_created = original
        retry = await post_event(event)
        assert retry.status_code == 200
        assert retry.json()['outcome'] == 'created'

    async def test_failed_handler_leaves_no_partial_state(self, container, post_event, make_event,
                                                          make_subscription, seed_profile, load_profile):
        user_id = await seed_profile(customer_id='cus_123')
        container.webhook_service._subscriptions._store.update_profile = AsyncMock(
            side_effect=RuntimeError('profile write failed')
        )

        response = await post_event(make_event('customer.subscription.created', make_subscription()))

        assert response.status_code == 500
        async with container.session_factory() as session:
            records = (await session.execute(select(SubscriptionRecord))).scalars().all()
        assert records == []
        assert (await load_profile(user_id)).plan == 'free'


class TestCheckoutEvents:

    def _checkout(self, email='new@example.com', customer='cus_new', reference=None):
        return {
            'id': 'cs_1',
            'object': 'checkout.session',
            'customer': customer,
            'client_reference_id': reference,
            'customer_details': {'email': email, 'name': 'New Buyer'},
        }

    async def test_links_existing_user_by_reference(self, post_event, make_event, seed_profile, load_profile):
        user_id = await seed_profile()

        response = await post_event(make_event('checkout.session.completed', self._checkout(reference=user_id)))

        assert response.json()['outcome'] == 'linked'
        assert (await load_profile(user_id)).stripe_customer_id == 'cus_new'

    async def test_provisions_unknown_email(self, container, post_event, make_event):
        response = await post_event(make_event('checkout.session.completed', self._checkout()))

        assert response.json()['outcome'] == 'provisioned'
        async with container.session_factory() as session:
            profile = (await session.execute(
                select(UserProfile).where(UserProfile.email == 'new@example.com')
            )).scalar_one()
            tasks = (await session.execute(select(EntitlementTask))).scalars().all()
        assert profile.plan == 'free'
        assert profile.stripe_customer_id == 'cus_new'
        assert [(t.kind, t.status) for t in tasks] == [('password_setup', 'completed')]

    async def test_checkout_then_subscription(self, post_event, make_event, make_subscription, load_profile,
                                              container):
        await post_event(make_event('checkout.session.completed', self._checkout(customer='cus_123')))

        response = await post_event(make_event('customer.subscription.created', make_subscription()))

        assert response.json()['outcome'] == 'created'
        async with container.session_factory() as session:
            profile = await container.store.get_profile_by_customer(session, 'cus_123')
        assert profile.plan == 'basic'
