"""
Entitlement Store Tables

ORM models for the entitlement mirror. Period bounds and event timestamps are
kept as epoch seconds exactly as Stripe sends them.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from enhpix.database.db import Base, uuid4_str


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UserProfile(Base):
    """Local mirror of a user's plan and credit snapshot."""
    __tablename__ = 'user_profiles'

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default='free')
    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    current_subscription_id: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class SubscriptionRecord(Base):
    """Mirror of one Stripe subscription. Old records are kept for audit."""
    __tablename__ = 'subscriptions'
    __table_args__ = (
        Index('ix_subscriptions_user_status', 'user_id', 'status'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid4_str)
    stripe_subscription_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('user_profiles.user_id'), nullable=False)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_price_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan: Mapped[str] = mapped_column(String(20), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    current_period_start: Mapped[Optional[int]] = mapped_column(BigInteger)
    current_period_end: Mapped[Optional[int]] = mapped_column(BigInteger)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_event_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    # Stripe creation time; orders competing subscriptions of one user
    stripe_created: Mapped[Optional[int]] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class UsageRecord(Base):
    """Images processed against the limit for one calendar month."""
    __tablename__ = 'usage_records'
    __table_args__ = (
        UniqueConstraint('user_id', 'month', 'year', name='uq_usage_records_user_period'),
        CheckConstraint('images_processed >= 0', name='ck_usage_records_processed_non_negative'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('user_profiles.user_id'), nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    images_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    images_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_period_end: Mapped[Optional[int]] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class WebhookEvent(Base):
    """Delivery log used for deduplication and reconciliation candidates."""
    __tablename__ = 'webhook_events'
    __table_args__ = (
        Index('ix_webhook_events_status', 'status'),
    )

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default='processing')
    detail: Mapped[Optional[str]] = mapped_column(Text)
    customer_id: Mapped[Optional[str]] = mapped_column(String(255))
    subscription_id: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class EntitlementTask(Base):
    """A side effect queued alongside a primary mutation."""
    __tablename__ = 'entitlement_tasks'
    __table_args__ = (
        Index('ix_entitlement_tasks_status', 'status'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid4_str)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default='pending')
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class CancelledUser(Base):
    __tablename__ = 'cancelled_users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    plan: Mapped[Optional[str]] = mapped_column(String(20))
    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reason: Mapped[Optional[str]] = mapped_column(String(100))
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(255))
    cancelled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
