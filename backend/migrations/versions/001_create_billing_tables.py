"""Create billing tables

Revision ID: 001
Revises: 
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('document_number', sa.String(length=20), nullable=True),
        sa.Column('role', sa.String(length=30), nullable=False),
        _timestamp('created_at'),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(length=30), nullable=False),
        sa.Column('gateway_payment_method_id', sa.String(length=50), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        _timestamp('created_at'),
    )
    op.create_index('ix_payment_methods_id', 'payment_methods', ['id'])
    op.create_index('ix_payment_methods_user_id', 'payment_methods', ['user_id'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('interval', sa.String(length=30), nullable=False),
        sa.Column('interval_count', sa.Integer(), nullable=False),
        sa.Column('trial_days', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('max_job_offers', sa.Integer(), nullable=False),
        sa.Column('max_featured_job_offers', sa.Integer(), nullable=False),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.CheckConstraint('price >= 0', name='ck_subscription_plans_price_non_negative'),
        sa.CheckConstraint('interval_count >= 1', name='ck_subscription_plans_interval_count'),
    )
    op.create_index('ix_subscription_plans_id', 'subscription_plans', ['id'])

    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('discount_type', sa.String(length=30), nullable=False),
        sa.Column('discount_value', sa.Numeric(10, 2), nullable=False),
        sa.Column('max_discount_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('applies_to_all_plans', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=False),
        _timestamp('starts_at', nullable=True),
        _timestamp('expires_at', nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_coupons_id', 'coupons', ['id'])
    op.create_index('ix_coupons_code', 'coupons', ['code'], unique=True)

    op.create_table(
        'coupon_plan_restrictions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('coupon_id', sa.Integer(), sa.ForeignKey('coupons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id', ondelete='CASCADE'), nullable=False),
        sa.UniqueConstraint('coupon_id', 'plan_id', name='uq_coupon_plan_restrictions_coupon_plan'),
    )
    op.create_index('ix_coupon_plan_restrictions_id', 'coupon_plan_restrictions', ['id'])
    op.create_index('ix_coupon_plan_restrictions_coupon_id', 'coupon_plan_restrictions', ['coupon_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('payment_method_id', sa.Integer(), sa.ForeignKey('payment_methods.id'), nullable=False),
        sa.Column('coupon_id', sa.Integer(), sa.ForeignKey('coupons.id'), nullable=True),
        sa.Column('checkout_session_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False),
        _timestamp('status_changed_at'),
        sa.Column('is_paused', sa.Boolean(), nullable=False),
        _timestamp('paused_at', nullable=True),
        _timestamp('current_period_start', nullable=True),
        _timestamp('current_period_end', nullable=True),
        _timestamp('next_billing_date', nullable=True),
        _timestamp('trial_ends_at', nullable=True),
        sa.Column('used_job_offers', sa.Integer(), nullable=False),
        sa.Column('used_featured_job_offers', sa.Integer(), nullable=False),
        sa.Column('gateway_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('gateway_preference_id', sa.String(length=255), nullable=True),
        _timestamp('last_payment_at', nullable=True),
        sa.Column('renewal_failures', sa.Integer(), nullable=False),
        _timestamp('renewal_attempted_at', nullable=True),
        _timestamp('canceled_at', nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_gateway_subscription_id', 'subscriptions', ['gateway_subscription_id'], unique=True)
    op.create_index('ix_subscriptions_gateway_preference_id', 'subscriptions', ['gateway_preference_id'])

    op.create_table(
        'checkout_sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('payment_method_id', sa.Integer(), sa.ForeignKey('payment_methods.id'), nullable=False),
        sa.Column('coupon_id', sa.Integer(), sa.ForeignKey('coupons.id'), nullable=True),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('transaction_id', sa.String(length=100), nullable=False),
        sa.Column('gateway_preference_id', sa.String(length=255), nullable=True),
        sa.Column('checkout_url', sa.Text(), nullable=True),
        sa.Column('sandbox_checkout_url', sa.Text(), nullable=True),
        sa.Column('success_url', sa.Text(), nullable=True),
        sa.Column('cancel_url', sa.Text(), nullable=True),
        sa.Column('original_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('final_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        _timestamp('created_at'),
        _timestamp('expires_at'),
        _timestamp('completed_at', nullable=True),
    )
    op.create_index('ix_checkout_sessions_id', 'checkout_sessions', ['id'])
    op.create_index('ix_checkout_sessions_user_id', 'checkout_sessions', ['user_id'])
    op.create_index('ix_checkout_sessions_subscription_id', 'checkout_sessions', ['subscription_id'])
    op.create_index('ix_checkout_sessions_transaction_id', 'checkout_sessions', ['transaction_id'], unique=True)
    op.create_index('ix_checkout_sessions_gateway_preference_id', 'checkout_sessions', ['gateway_preference_id'])
    op.create_index(
        'uq_checkout_sessions_open_subscription', 'checkout_sessions', ['subscription_id'],
        unique=True, postgresql_where=sa.text("status = 'pending'")
    )

    op.create_table(
        'coupon_usages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('coupon_id', sa.Integer(), sa.ForeignKey('coupons.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('checkout_session_id', sa.Integer(), sa.ForeignKey('checkout_sessions.id'), nullable=False),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id'), nullable=True),
        sa.Column('original_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('final_amount', sa.Numeric(10, 2), nullable=False),
        _timestamp('created_at'),
        sa.UniqueConstraint('checkout_session_id', name='uq_coupon_usages_checkout_session_id'),
    )
    op.create_index('ix_coupon_usages_id', 'coupon_usages', ['id'])
    op.create_index('ix_coupon_usages_coupon_user', 'coupon_usages', ['coupon_id', 'user_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=255), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False),
        _timestamp('payment_date'),
        sa.Column('gateway_status', sa.String(length=50), nullable=False),
        sa.Column('gateway_status_detail', sa.String(length=255), nullable=True),
        sa.Column('payment_type', sa.String(length=50), nullable=True),
        sa.Column('raw_response', sa.JSON(), nullable=True),
        sa.Column('status_history', sa.JSON(), nullable=True),
        sa.Column('applied', sa.Boolean(), nullable=False),
        _timestamp('covers_period_end', nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_payments_id', 'payments', ['id'])
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('ix_payments_gateway_payment_id', 'payments', ['gateway_payment_id'], unique=True)

    op.create_table(
        'subscription_transitions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_status', sa.String(length=30), nullable=True),
        sa.Column('to_status', sa.String(length=30), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('source', sa.String(length=30), nullable=False),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_subscription_transitions_id', 'subscription_transitions', ['id'])
    op.create_index('ix_subscription_transitions_subscription_id', 'subscription_transitions', ['subscription_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('source', sa.String(length=50), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('action', sa.String(length=100), nullable=True),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('live_mode', sa.Boolean(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('process_status', sa.String(length=30), nullable=False),
        sa.Column('outcome', sa.String(length=50), nullable=True),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        _timestamp('created_at'),
        _timestamp('processed_at', nullable=True),
    )
    op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_resource_id', 'webhook_events', ['resource_id'])
    op.create_index('ix_webhook_events_subscription_id', 'webhook_events', ['subscription_id'])


def downgrade() -> None:
    for table in (
        'webhook_events', 'subscription_transitions', 'payments', 'coupon_usages',
        'checkout_sessions', 'subscriptions', 'coupon_plan_restrictions', 'coupons',
        'subscription_plans', 'payment_methods', 'users',
    ):
        op.drop_table(table)
