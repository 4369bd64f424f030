"""Add entitlement mirror tables

Revision ID: 20261019_001_entitlements
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration adds the entitlement engine tables:
- user_profiles: Plan and credit snapshot per user
- subscriptions: Mirror of Stripe subscriptions
- usage_records: Monthly image quota per user
- webhook_events: Delivery log for deduplication and reconciliation
- entitlement_tasks: Queued side effects
- cancelled_users: Cancellation audit trail
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261019_001_entitlements'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create entitlement tables."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = inspector.get_table_names()

    # -------------------------------------------------------------------------
    # 1. user_profiles - Plan and credit snapshot
    # -------------------------------------------------------------------------
    if 'user_profiles' not in existing_tables:
        op.create_table(
            'user_profiles',
            sa.Column('user_id', sa.String(length=64), nullable=False, comment='Identity provider user ID'),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('full_name', sa.String(length=255), nullable=True),
            sa.Column('plan', sa.String(length=20), server_default='free', nullable=False, comment='free, basic, pro, premium, cancelled'),
            sa.Column('credits_remaining', sa.Integer(), server_default='0', nullable=False, comment='Display snapshot of the current period'),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('current_subscription_id', sa.String(length=255), nullable=True, comment='Stripe subscription ID'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('user_id'),
            sa.UniqueConstraint('email'),
            sa.UniqueConstraint('stripe_customer_id'),
        )

    # -------------------------------------------------------------------------
    # 2. subscriptions - One row per Stripe subscription, kept for audit
    # -------------------------------------------------------------------------
    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_price_id', sa.String(length=255), nullable=False),
            sa.Column('plan', sa.String(length=20), nullable=False),
            sa.Column('billing_cycle', sa.String(length=10), nullable=False, comment='monthly, yearly'),
            sa.Column('status', sa.String(length=20), nullable=False, comment='active, past_due, cancelled'),

            # Stripe epoch seconds
            sa.Column('current_period_start', sa.BigInteger(), nullable=True),
            sa.Column('current_period_end', sa.BigInteger(), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), server_default=sa.false(), nullable=False),
            sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_event_at', sa.BigInteger(), nullable=True, comment='created of the last applied event'),
            sa.Column('stripe_created', sa.BigInteger(), nullable=True, comment='Stripe creation time of the subscription'),

            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['user_profiles.user_id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('stripe_subscription_id'),
        )
        op.create_index('ix_subscriptions_user_status', 'subscriptions', ['user_id', 'status'])

    # -------------------------------------------------------------------------
    # 3. usage_records - Monthly quota, one row per user and calendar month
    # -------------------------------------------------------------------------
    if 'usage_records' not in existing_tables:
        op.create_table(
            'usage_records',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('month', sa.Integer(), nullable=False),
            sa.Column('year', sa.Integer(), nullable=False),
            sa.Column('images_processed', sa.Integer(), server_default='0', nullable=False),
            sa.Column('images_limit', sa.Integer(), nullable=False),
            sa.Column('limit_period_end', sa.BigInteger(), nullable=True, comment='Billing period that set the limit'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['user_profiles.user_id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('user_id', 'month', 'year', name='uq_usage_records_user_period'),
            sa.CheckConstraint('images_processed >= 0', name='ck_usage_records_processed_non_negative'),
        )

    # -------------------------------------------------------------------------
    # 4. webhook_events - Delivery log
    # -------------------------------------------------------------------------
    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('event_id', sa.String(length=255), nullable=False, comment='Stripe event ID'),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('status', sa.String(length=20), server_default='processing', nullable=False, comment='processing, completed, skipped, failed'),
            sa.Column('detail', sa.Text(), nullable=True, comment='Skip reason or error message'),
            sa.Column('customer_id', sa.String(length=255), nullable=True),
            sa.Column('subscription_id', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('event_id'),
        )
        op.create_index('ix_webhook_events_status', 'webhook_events', ['status'])

    # -------------------------------------------------------------------------
    # 5. entitlement_tasks - Side effects queued with a primary mutation
    # -------------------------------------------------------------------------
    if 'entitlement_tasks' not in existing_tables:
        op.create_table(
            'entitlement_tasks',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('kind', sa.String(length=50), nullable=False, comment='track_cancellation, password_setup'),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('status', sa.String(length=20), server_default='pending', nullable=False),
            sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_entitlement_tasks_status', 'entitlement_tasks', ['status'])

    # -------------------------------------------------------------------------
    # 6. cancelled_users - Cancellation audit trail
    # -------------------------------------------------------------------------
    if 'cancelled_users' not in existing_tables:
        op.create_table(
            'cancelled_users',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('plan', sa.String(length=20), nullable=True, comment='Plan before cancellation'),
            sa.Column('credits_remaining', sa.Integer(), server_default='0', nullable=False),
            sa.Column('reason', sa.String(length=100), nullable=True),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_cancelled_users_user_id', 'cancelled_users', ['user_id'])


def downgrade() -> None:
    """Drop entitlement tables."""
    op.drop_index('ix_cancelled_users_user_id', table_name='cancelled_users')
    op.drop_table('cancelled_users')
    op.drop_index('ix_entitlement_tasks_status', table_name='entitlement_tasks')
    op.drop_table('entitlement_tasks')
    op.drop_index('ix_webhook_events_status', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_table('usage_records')
    op.drop_index('ix_subscriptions_user_status', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('user_profiles')
