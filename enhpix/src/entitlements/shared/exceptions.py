"""
Entitlement Exceptions

Custom exception classes for entitlement errors. Each class maps to one
handling policy: reject, skip-and-acknowledge, surface to the caller, or
propagate as a server failure.
"""


class EntitlementError(Exception):
    """
    Base exception for all entitlement errors.

    All entitlement exceptions inherit from this class, allowing for
    broad exception handling when needed.
    """

    def __init__(self, message: str, code: str = "ENTITLEMENT_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class AuthenticityError(EntitlementError):
    """
    Raised when a webhook cannot be authenticated.

    Examples:
        - Missing Stripe-Signature header
        - Signature mismatch or timestamp outside tolerance
        - Payload that is not a JSON event
    """

    def __init__(self, message: str = "Webhook signature verification failed"):
        super().__init__(message=message, code="INVALID_SIGNATURE")


class UnknownPriceError(EntitlementError):
    """Raised when a Stripe price id is not in the plan catalog."""

    def __init__(self, price_id: str):
        super().__init__(
            message=f"Price '{price_id}' is not configured in the plan catalog",
            code="UNKNOWN_PRICE",
            details={'price_id': price_id}
        )
        self.price_id = price_id


class LookupRaceError(EntitlementError):
    """
    Raised when no profile can be linked to a Stripe customer, even after
    the email fallback. Usually the checkout event has not landed yet.
    """

    def __init__(self, customer_id: str = None, email: str = None):
        details = {}
        if customer_id:
            details['customer_id'] = customer_id
        if email:
            details['email'] = email
        super().__init__(
            message=f"No user linked to customer {customer_id}",
            code="USER_NOT_LINKED",
            details=details
        )
        self.customer_id = customer_id
        self.email = email


class SubscriptionNotMirroredError(EntitlementError):
    """Raised when an event refers to a subscription with no local record."""

    def __init__(self, subscription_id: str = None):
        super().__init__(
            message=f"Subscription {subscription_id} has no local record",
            code="SUBSCRIPTION_NOT_MIRRORED",
            details={'subscription_id': subscription_id} if subscription_id else {}
        )
        self.subscription_id = subscription_id


class PersistenceUnavailableError(EntitlementError):
    """Raised when the entitlement store cannot be read or written."""

    def __init__(self, message: str = "Entitlement store unavailable", operation: str = None):
        super().__init__(
            message=message,
            code="PERSISTENCE_UNAVAILABLE",
            details={'operation': operation} if operation else {}
        )
        self.operation = operation


class ReconciliationSourceError(EntitlementError):
    """
    Raised when the authoritative subscription state cannot be read.

    Network errors, authentication errors, timeouts and an open circuit all
    end up here. A source error never drives a mutation.
    """

    def __init__(self, message: str = "Could not read subscription state from Stripe", operation: str = None):
        super().__init__(
            message=message,
            code="RECONCILIATION_SOURCE_ERROR",
            details={'operation': operation} if operation else {}
        )
        self.operation = operation


class ProfileNotFoundError(EntitlementError):
    """Raised when a user has no local profile."""

    def __init__(self, user_id: str):
        super().__init__(
            message=f"Profile for user {user_id} not found",
            code="PROFILE_NOT_FOUND",
            details={'user_id': user_id}
        )
        self.user_id = user_id


class SubscriptionError(EntitlementError):
    """
    Raised when there's an issue with subscription management.

    Examples:
        - No active subscription to cancel
        - Stripe refused the cancellation
    """

    def __init__(
        self,
        message: str = "Subscription error",
        code: str = "SUBSCRIPTION_ERROR",
        subscription_id: str = None
    ):
        super().__init__(
            message=message,
            code=code,
            details={'subscription_id': subscription_id} if subscription_id else {}
        )
        self.subscription_id = subscription_id


class CircuitBreakerOpenError(ReconciliationSourceError):
    """Raised when the circuit breaker is open and preventing calls."""

    def __init__(
        self,
        message: str = "Circuit breaker is open. Service temporarily unavailable.",
        service_name: str = "stripe",
        reset_time: float = None
    ):
        super().__init__(message=message)
        self.code = "CIRCUIT_BREAKER_OPEN"
        self.details = {
            'service_name': service_name,
            'reset_time': reset_time
        }
        self.service_name = service_name
        self.reset_time = reset_time
