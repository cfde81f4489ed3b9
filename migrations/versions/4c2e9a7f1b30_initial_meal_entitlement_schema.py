"""Initial meal entitlement schema

Revision ID: 4c2e9a7f1b30
Revises:
Create Date: 2026-09-28 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c2e9a7f1b30'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('customers',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('payment_provider', sa.String(length=20), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('paypal_payer_id', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('telegram_handle', sa.String(length=64), nullable=True),
        sa.Column('telegram_user_id', sa.String(length=64), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint("payment_provider IN ('stripe', 'paypal')", name='ck_customers_payment_provider'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('paypal_payer_id'),
        sa.UniqueConstraint('stripe_customer_id')
    )
    op.create_table('subscriptions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('customer_id', sa.String(length=36), nullable=False),
        sa.Column('payment_provider', sa.String(length=20), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('paypal_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('chargeback_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_failure_count', sa.Integer(), nullable=False),
        sa.Column('last_payment_failure_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint("status IN ('approval_pending', 'trialing', 'active', 'past_due', 'suspended', 'canceled', 'expired')", name='ck_subscriptions_status'),
        sa.CheckConstraint("chargeback_at IS NULL OR status = 'suspended'", name='ck_subscriptions_chargeback_suspended'),
        sa.CheckConstraint("(payment_provider = 'stripe' AND stripe_subscription_id IS NOT NULL) OR (payment_provider = 'paypal' AND paypal_subscription_id IS NOT NULL)", name='ck_subscriptions_provider_id'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('paypal_subscription_id'),
        sa.UniqueConstraint('stripe_subscription_id')
    )
    op.create_index('ix_subscriptions_customer_id', 'subscriptions', ['customer_id'], unique=False)
    op.create_index('idx_subscriptions_customer_created', 'subscriptions', ['customer_id', 'created_at'], unique=False)

    op.create_table('webhook_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_attempted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint("status IN ('processing', 'processed', 'failed')", name='ck_webhook_events_status'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source', 'event_id', name='uq_webhook_events_source_event')
    )
    op.create_index('idx_webhook_events_status', 'webhook_events', ['status'], unique=False)

    op.create_table('entitlements',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('customer_id', sa.String(length=36), nullable=False),
        sa.Column('service_date', sa.Date(), nullable=False),
        sa.Column('meals_allowed', sa.Integer(), nullable=False),
        sa.Column('meals_redeemed', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint('meals_redeemed >= 0 AND meals_redeemed <= meals_allowed', name='ck_entitlements_redeemed_within_allowed'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('customer_id', 'service_date', name='uq_entitlements_customer_date')
    )
    op.create_index('ix_entitlements_service_date', 'entitlements', ['service_date'], unique=False)

    op.create_table('skips',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('customer_id', sa.String(length=36), nullable=False),
        sa.Column('skip_date', sa.Date(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint("source IN ('telegram', 'admin')", name='ck_skips_source'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('customer_id', 'skip_date', name='uq_skips_customer_date')
    )
    op.create_index('ix_skips_skip_date', 'skips', ['skip_date'], unique=False)

    op.create_table('meal_tokens',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('customer_id', sa.String(length=36), nullable=False),
        sa.Column('service_date', sa.Date(), nullable=False),
        sa.Column('jti', sa.String(length=64), nullable=False),
        sa.Column('short_code', sa.String(length=12), nullable=False),
        sa.Column('jwt_token', sa.Text(), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('customer_id', 'service_date', name='uq_meal_tokens_customer_date'),
        sa.UniqueConstraint('jti'),
        sa.UniqueConstraint('short_code')
    )

    op.create_table('redemptions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('jti', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.String(length=36), nullable=False),
        sa.Column('service_date', sa.Date(), nullable=False),
        sa.Column('kiosk_id', sa.String(length=100), nullable=False),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('jti')
    )
    op.create_index('ix_redemptions_service_date', 'redemptions', ['service_date'], unique=False)

    op.create_table('kiosk_sessions',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('kiosk_id', sa.String(length=100), nullable=False),
        sa.Column('location', sa.String(length=255), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('use_count', sa.Integer(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_kiosk_sessions_kiosk_id', 'kiosk_sessions', ['kiosk_id'], unique=False)

    op.create_table('notification_deliveries',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('customer_id', sa.String(length=36), nullable=True),
        sa.Column('template', sa.String(length=50), nullable=False),
        sa.Column('recipient', sa.String(length=255), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint("status IN ('pending', 'sending', 'sent', 'retrying', 'failed', 'skipped')", name='ck_notification_deliveries_status'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key')
    )
    op.create_index('idx_notification_deliveries_retry', 'notification_deliveries', ['status', 'next_attempt_at'], unique=False)

    op.create_table('service_exceptions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('exception_date', sa.Date(), nullable=False),
        sa.Column('is_service_day', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('exception_date')
    )

    op.create_table('audit_log',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('actor', sa.String(length=100), nullable=False),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('subject_type', sa.String(length=50), nullable=True),
        sa.Column('subject_id', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_log_subject_id', 'audit_log', ['subject_id'], unique=False)


def downgrade():
    op.drop_index('ix_audit_log_subject_id', table_name='audit_log')
    op.drop_table('audit_log')
    op.drop_table('service_exceptions')
    op.drop_index('idx_notification_deliveries_retry', table_name='notification_deliveries')
    op.drop_table('notification_deliveries')
    op.drop_index('ix_kiosk_sessions_kiosk_id', table_name='kiosk_sessions')
    op.drop_table('kiosk_sessions')
    op.drop_index('ix_redemptions_service_date', table_name='redemptions')
    op.drop_table('redemptions')
    op.drop_table('meal_tokens')
    op.drop_index('ix_skips_skip_date', table_name='skips')
    op.drop_table('skips')
    op.drop_index('ix_entitlements_service_date', table_name='entitlements')
    op.drop_table('entitlements')
    op.drop_index('idx_webhook_events_status', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('idx_subscriptions_customer_created', table_name='subscriptions')
    op.drop_index('ix_subscriptions_customer_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('customers')
