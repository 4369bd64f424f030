"""
Usage Domain Types

Outcome of a consume attempt and a read-only view of a usage record.
Usage is counted per calendar month (UTC).
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


class ConsumeReason(str, Enum):
    GRANTED = "granted"
    QUOTA_EXHAUSTED = "quota_exhausted"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


CONSUME_MESSAGES = {
    ConsumeReason.GRANTED: "Credit consumed",
    ConsumeReason.QUOTA_EXHAUSTED: "Monthly image limit reached, upgrade needed",
    ConsumeReason.SUBSCRIPTION_CANCELLED: "Subscription cancelled, resubscribe needed",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def period_key(now: datetime) -> Tuple[int, int]:
    """Return the (month, year) usage key for `now`."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.month, now.year


@dataclass(frozen=True)
class ConsumeResult:
    """Structured result of `CreditLedger.try_consume`."""
    granted: bool
    remaining: int
    reason: ConsumeReason

    @property
    def message(self) -> str:
        return CONSUME_MESSAGES[self.reason]

    def to_dict(self) -> dict:
        return {
            'granted': self.granted,
            'remaining': self.remaining,
            'reason': self.reason.value,
            'message': self.message,
        }


@dataclass(frozen=True)
class UsageSnapshot:
    user_id: str
    month: int
    year: int
    images_processed: int
    images_limit: int
    limit_period_end: Optional[int] = None

    @property
    def remaining(self) -> int:
        return max(0, self.images_limit - self.images_processed)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['remaining'] = self.remaining
        return data
