"""
Stripe Circuit Breaker

Implements the circuit breaker pattern for Stripe API calls so a Stripe
outage fails reconciliation reads fast instead of piling up requests.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Stripe is failing, block requests
- HALF_OPEN: Recovery timeout elapsed, let a probe request through

State lives in the process. Each worker trips its own breaker.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

import stripe

from enhpix.src.entitlements.shared.exceptions import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class StripeCircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Usage:
        breaker = StripeCircuitBreaker(failure_threshold=5, recovery_timeout=60)
        customer = await breaker.safe_call(stripe.Customer.retrieve_async, "cus_123")
    """

    def __init__(
        self,
        circuit_name: str = "stripe_api",
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the circuit breaker.

        Args:
            circuit_name: Name used in logs and status
            failure_threshold: Consecutive failures before opening the circuit
            recovery_timeout: Seconds to wait before testing recovery
            expected_exceptions: Errors that count as failures
                (default: Stripe errors and timeouts)
            clock: Monotonic time source
        """
        self.circuit_name = circuit_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exceptions = expected_exceptions or (stripe.StripeError, asyncio.TimeoutError)
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    async def safe_call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute a Stripe API call with circuit breaker protection.

        The lock only guards state transitions; the call itself runs
        unlocked so concurrent requests are not serialized. While half-open,
        a single probe call is let through and the rest are rejected.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
            Exception: Whatever the call raised
        """
        async with self._lock:
            allowed = self._should_allow_request()
            probing = allowed and self._state == CircuitState.HALF_OPEN
            if probing:
                self._half_open_in_flight = True
            if not allowed:
                reset_time = None
                if self._opened_at is not None:
                    reset_time = max(0.0, self._opened_at + self.recovery_timeout - self._clock())
                logger.warning(f"[CIRCUIT BREAKER] Request blocked - circuit is {self._state.value}")
                raise CircuitBreakerOpenError(service_name=self.circuit_name, reset_time=reset_time)

        try:
            result = await func(*args, **kwargs)
        except self.expected_exceptions as e:
            async with self._lock:
                self._record_failure(str(e) or type(e).__name__)
            raise
        else:
            async with self._lock:
                self._record_success()
            return result
        finally:
            if probing:
                self._half_open_in_flight = False

    def get_status(self) -> Dict:
        """
        Get current circuit breaker status.

        Returns:
            Dictionary with circuit state and metrics
        """
        return {
            'circuit_name': self.circuit_name,
            'state': self._state.value,
            'failure_count': self._failure_count,
            'failure_threshold': self.failure_threshold,
            'recovery_timeout': self.recovery_timeout,
        }

    def _should_allow_request(self) -> bool:
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            if self._opened_at is not None and self._clock() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                logger.info(f"[CIRCUIT BREAKER] Transitioned {self.circuit_name} to half-open")
                return True
            return False
        # Half-open: one probe at a time
        return not self._half_open_in_flight

    def _record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} recovered, closing circuit")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None

    def _record_failure(self, error_message: str) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                f"[CIRCUIT BREAKER] Circuit opened due to {self._failure_count} failures: {error_message}"
            )
        else:
            logger.debug(f"[CIRCUIT BREAKER] Recorded failure #{self._failure_count} for {self.circuit_name}")
