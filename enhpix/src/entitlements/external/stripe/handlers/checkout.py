"""
Checkout Webhook Handler

Handles checkout.session.completed: links the paying customer to a local
profile, provisioning an identity and profile when the email is new.
Subscription state itself arrives with customer.subscription.created.
"""

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from enhpix.src.entitlements.shared.config import PlanCatalog, PlanTier
from enhpix.src.entitlements.store.repository import EntitlementStore
from enhpix.src.entitlements.tasks.identity import IdentityProvisioner
from enhpix.src.entitlements.tasks.queue import TASK_PASSWORD_SETUP, EntitlementTaskQueue

logger = logging.getLogger(__name__)


class CheckoutHandler:

    def __init__(
        self,
        store: EntitlementStore,
        catalog: PlanCatalog,
        identity: IdentityProvisioner,
        task_queue: EntitlementTaskQueue,
    ):
        self._store = store
        self._catalog = catalog
        self._identity = identity
        self._task_queue = task_queue

    async def handle_checkout_completed(self, session: AsyncSession, event: Dict[str, Any]) -> str:
        """
        Handle checkout.session.completed event.

        Returns:
            What happened: 'already_linked', 'linked', 'provisioned' or 'ignored'
        """
        checkout = event['data']['object']
        customer_id = checkout.get('customer')
        details = checkout.get('customer_details') or {}
        email = details.get('email') or checkout.get('customer_email')
        full_name = details.get('name')
        reference_user_id = checkout.get('client_reference_id')

        logger.info(f"[CHECKOUT] Completed: session={checkout.get('id')}, customer={customer_id}")

        if not customer_id:
            logger.info("[CHECKOUT] Session has no customer, nothing to link")
            return 'ignored'

        profile = await self._store.get_profile_by_customer(session, customer_id)
        if profile:
            return 'already_linked'

        if reference_user_id:
            profile = await self._store.get_profile(session, reference_user_id)
        if profile is None and email:
            profile = await self._store.get_profile_by_email(session, email)

        if profile:
            await self._store.link_customer(session, profile.user_id, customer_id)
            logger.info(f"[CHECKOUT] Linked {customer_id} to existing user {profile.user_id}")
            return 'linked'

        if not email:
            logger.warning(f"[CHECKOUT] Customer {customer_id} has no email, cannot provision")
            return 'ignored'

        user_id = await self._identity.ensure_identity(email, full_name)
        await self._store.ensure_profile(
            session,
            user_id=user_id,
            email=email,
            full_name=full_name,
            plan=PlanTier.FREE.value,
            credits_remaining=self._catalog.credits_for_tier(PlanTier.FREE),
        )
        await self._store.link_customer(session, user_id, customer_id)
        await self._task_queue.enqueue(
            session, TASK_PASSWORD_SETUP, {'user_id': user_id, 'email': email}
        )
        logger.info(f"[CHECKOUT] Provisioned user {user_id} for {email}")
        return 'provisioned'
