"""
Stripe API Client

Circuit-breaker-protected access to the handful of Stripe endpoints the
engine reads and writes. Every call carries its own API key (no global
`stripe.api_key`) and is bounded by `STRIPE_REQUEST_TIMEOUT`.

Results are returned as plain dicts so callers never depend on the SDK's
object model.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import stripe

from enhpix.core.conf import Settings
from enhpix.src.entitlements.shared.exceptions import (
    CircuitBreakerOpenError,
    ReconciliationSourceError,
)
from .circuit_breaker import StripeCircuitBreaker

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Dict:
    if obj is None or isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return obj.to_dict()


class StripeClient:
    """
    Safe wrapper for the Stripe calls used by reconciliation, the checkout
    linking fallback and cancellation.

    Usage:
        client = StripeClient.from_settings(settings)
        subscriptions = await client.list_active_subscriptions("cus_123")

    Read failures of any kind (API error, timeout, open circuit) surface as
    ReconciliationSourceError. Write failures keep the original Stripe error
    so callers can tell a refusal from an outage.
    """

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        circuit_breaker: Optional[StripeCircuitBreaker] = None,
    ):
        self._api_key = api_key
        self._timeout = timeout
        self._circuit_breaker = circuit_breaker or StripeCircuitBreaker()

    @classmethod
    def from_settings(cls, settings: Settings) -> 'StripeClient':
        return cls(
            api_key=settings.STRIPE_SECRET_KEY,
            timeout=settings.STRIPE_REQUEST_TIMEOUT,
            circuit_breaker=StripeCircuitBreaker(
                failure_threshold=settings.STRIPE_CIRCUIT_FAILURE_THRESHOLD,
                recovery_timeout=settings.STRIPE_CIRCUIT_RECOVERY_TIMEOUT,
            ),
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def get_circuit_status(self) -> Dict:
        """Get the current circuit breaker status."""
        return self._circuit_breaker.get_status()

    async def safe_stripe_call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a Stripe API call with the API key, timeout and breaker applied.

        Raises:
            ValueError: If no API key is configured
            CircuitBreakerOpenError: If the circuit is open
            asyncio.TimeoutError: If Stripe does not answer in time
            stripe.StripeError: If Stripe rejects the call
        """
        if not self._api_key:
            raise ValueError("STRIPE_SECRET_KEY not configured")

        async def bounded_call():
            return await asyncio.wait_for(
                func(*args, api_key=self._api_key, **kwargs),
                timeout=self._timeout,
            )

        return await self._circuit_breaker.safe_call(bounded_call)

    async def _read(self, operation: str, func: Callable, *args, **kwargs) -> Any:
        try:
            return await self.safe_stripe_call(func, *args, **kwargs)
        except CircuitBreakerOpenError:
            raise
        except asyncio.TimeoutError as e:
            logger.warning(f"[STRIPE CLIENT] {operation} timed out after {self._timeout}s")
            raise ReconciliationSourceError(
                f"Stripe {operation} timed out", operation=operation
            ) from e
        except (stripe.StripeError, ValueError) as e:
            logger.warning(f"[STRIPE CLIENT] {operation} failed: {e}")
            raise ReconciliationSourceError(
                f"Stripe {operation} failed: {e}", operation=operation
            ) from e

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def retrieve_customer(self, customer_id: str) -> Dict:
        """Retrieve a Stripe customer by ID."""
        customer = await self._read('retrieve_customer', stripe.Customer.retrieve_async, customer_id)
        return _as_dict(customer)

    async def list_active_subscriptions(self, customer_id: str, limit: int = 10) -> List[Dict]:
        """Active subscriptions of a customer, newest first as Stripe returns them."""
        result = await self._read(
            'list_subscriptions',
            stripe.Subscription.list_async,
            customer=customer_id,
            status='active',
            limit=limit,
        )
        return [_as_dict(subscription) for subscription in result.data]

    async def retrieve_subscription(self, subscription_id: str) -> Dict:
        """Retrieve a subscription by ID."""
        subscription = await self._read(
            'retrieve_subscription', stripe.Subscription.retrieve_async, subscription_id
        )
        return _as_dict(subscription)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def cancel_at_period_end(self, subscription_id: str, idempotency_key: Optional[str] = None) -> Dict:
        """
        Schedule a subscription to cancel at the end of its current period.

        Raises:
            stripe.StripeError: If Stripe refuses the change
        """
        kwargs = {'cancel_at_period_end': True}
        if idempotency_key:
            kwargs['idempotency_key'] = idempotency_key
        subscription = await self.safe_stripe_call(
            stripe.Subscription.modify_async, subscription_id, **kwargs
        )
        logger.info(f"[STRIPE CLIENT] Subscription {subscription_id} set to cancel at period end")
        return _as_dict(subscription)
