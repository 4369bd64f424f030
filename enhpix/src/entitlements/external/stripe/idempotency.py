"""
Stripe Idempotency Keys

Deterministic keys for the write calls the engine makes, so a retried
cancellation inside the same window reaches Stripe as the same request.
"""

import hashlib
from datetime import datetime, timezone
from typing import Optional


def generate_key(
    operation: str,
    user_id: str,
    *args,
    time_bucket_minutes: int = 5,
    now: Optional[datetime] = None,
    **kwargs
) -> str:
    """
    Generate an idempotency key.

    Args:
        operation: Operation type (e.g., 'cancel_subscription')
        user_id: User identifier
        *args: Additional positional arguments to include in key
        time_bucket_minutes: Window in which retries reuse the same key
        now: Clock override
        **kwargs: Additional keyword arguments to include in key

    Returns:
        40-character hex idempotency key
    """
    now = now or datetime.now(timezone.utc)
    timestamp_bucket = int(now.timestamp() // (time_bucket_minutes * 60))

    components = [
        operation,
        user_id,
        *[str(arg) for arg in args],
        *[f"{k}={v}" for k, v in sorted(kwargs.items())],
        str(timestamp_bucket),
    ]
    return hashlib.sha256("_".join(components).encode()).hexdigest()[:40]


def generate_cancellation_key(user_id: str, subscription_id: str, now: Optional[datetime] = None) -> str:
    return generate_key('cancel_subscription', user_id, subscription_id, time_bucket_minutes=60, now=now)
