"""
Customer Resolution

Finds the local user behind a Stripe customer id. Subscription events can
arrive before the checkout event that links the customer, so when no profile
carries the customer id yet the customer's email is fetched from Stripe and
the matching profile is linked on the spot.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from enhpix.src.entitlements.external.stripe.client import StripeClient
from enhpix.src.entitlements.shared.exceptions import LookupRaceError, ReconciliationSourceError
from enhpix.src.entitlements.store.models import UserProfile
from enhpix.src.entitlements.store.repository import EntitlementStore

logger = logging.getLogger(__name__)


class CustomerResolver:

    def __init__(self, store: EntitlementStore, stripe_client: StripeClient):
        self._store = store
        self._stripe = stripe_client

    async def resolve(
        self,
        session: AsyncSession,
        customer_id: Optional[str],
        metadata_user_id: Optional[str] = None,
    ) -> UserProfile:
        """
        Return the profile linked to `customer_id`, linking it by email if needed.

        Raises:
            LookupRaceError: If no profile can be found
        """
        if customer_id:
            profile = await self._store.get_profile_by_customer(session, customer_id)
            if profile:
                return profile

        if metadata_user_id:
            profile = await self._store.get_profile(session, metadata_user_id)
            if profile:
                if customer_id and not profile.stripe_customer_id:
                    await self._store.link_customer(session, profile.user_id, customer_id)
                    logger.info(f"[CHECKOUT] Linked {customer_id} to {profile.user_id} via metadata")
                return profile

        if not customer_id:
            raise LookupRaceError()

        try:
            customer = await self._stripe.retrieve_customer(customer_id)
        except ReconciliationSourceError as e:
            logger.warning(f"[CHECKOUT] Could not fetch customer {customer_id}: {e.message}")
            raise LookupRaceError(customer_id=customer_id) from e

        email = (customer or {}).get('email')
        if not email:
            logger.warning(f"[CHECKOUT] Customer {customer_id} has no email")
            raise LookupRaceError(customer_id=customer_id)

        profile = await self._store.get_profile_by_email(session, email)
        if profile is None:
            logger.warning(f"[CHECKOUT] No profile for {email} (customer {customer_id})")
            raise LookupRaceError(customer_id=customer_id, email=email)

        if profile.stripe_customer_id and profile.stripe_customer_id != customer_id:
            logger.warning(
                f"[CHECKOUT] {profile.user_id} is linked to {profile.stripe_customer_id}, "
                f"relinking to {customer_id}"
            )
        await self._store.link_customer(session, profile.user_id, customer_id)
        logger.info(f"[CHECKOUT] Linked {customer_id} to {profile.user_id} by email")
        return profile
