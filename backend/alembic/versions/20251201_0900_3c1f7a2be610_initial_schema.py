"""Initial schema: users, ledger, plans, subscriptions, usage, webhooks, payments, receipts, ai models

Revision ID: 3c1f7a2be610
Revises:
Create Date: 2025-12-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3c1f7a2be610'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(18, 5)
JSONB = postgresql.JSONB()

USAGE_TABLES = ('sandbox_usage', 'storage_usage', 'deployment_usage', 'database_usage', 'ai_usage')


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def _usage_columns() -> list[sa.Column]:
    return [
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('balance_transaction_id', sa.Uuid(), sa.ForeignKey('balance_transactions.id'), nullable=True),
        sa.Column('project_id', sa.String(255), nullable=True),
        sa.Column('provider_cost_usd', MONEY, nullable=False, server_default='0'),
    ]


def _base_indexes(table: str) -> None:
    op.create_index(op.f(f'ix_{table}_id'), table, ['id'])
    op.create_index(op.f(f'ix_{table}_created_at'), table, ['created_at'])


def upgrade() -> None:
    """Create all tables for the usage billing engine."""
    # 1. Users (no dependencies)
    op.create_table(
        'users',
        *_base_columns(),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('account_balance', MONEY, nullable=False, server_default='0'),
        sa.Column('billing_country', sa.String(2), nullable=True),
        sa.Column('provider_customer_id', sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_customer_id'),
    )
    _base_indexes('users')
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    # 2. Plans (no dependencies)
    op.create_table(
        'plans',
        *_base_columns(),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('display_name', sa.String(100), nullable=False),
        sa.Column('monthly_credits', sa.Integer(), nullable=False),
        sa.Column('price_monthly_usd', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('features', JSONB, nullable=False, server_default='[]'),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('plans')
    op.create_index(op.f('ix_plans_name'), 'plans', ['name'], unique=True)

    # 3. Balance transactions (depends on users)
    op.create_table(
        'balance_transactions',
        *_base_columns(),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'type',
            sa.Enum(
                'TOPUP', 'AI_USAGE', 'SANDBOX_USAGE', 'STORAGE_USAGE', 'DATABASE_USAGE',
                'DEPLOYMENT', 'REFUND', 'ADJUSTMENT',
                name='transactiontype',
            ),
            nullable=False,
        ),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('balance_before', MONEY, nullable=False),
        sa.Column('balance_after', MONEY, nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('metadata', JSONB, nullable=False, server_default='{}'),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_reference'),
    )
    _base_indexes('balance_transactions')
    op.create_index(op.f('ix_balance_transactions_user_id'), 'balance_transactions', ['user_id'])
    op.create_index(op.f('ix_balance_transactions_type'), 'balance_transactions', ['type'])
    op.create_index('ix_balance_transactions_user_created', 'balance_transactions', ['user_id', 'created_at'])

    # 4. Subscriptions (depends on users, plans)
    op.create_table(
        'subscriptions',
        *_base_columns(),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', sa.Uuid(), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column(
            'status',
            sa.Enum('ACTIVE', 'PAST_DUE', 'CANCELLED', 'EXPIRED', name='subscriptionstatus'),
            nullable=False,
        ),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('monthly_credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('period_credits_reset_at', sa.DateTime(), nullable=True),
        sa.Column('pending_plan_id', sa.Uuid(), sa.ForeignKey('plans.id'), nullable=True),
        sa.Column('plan_change_at', sa.DateTime(), nullable=True),
        sa.Column('payment_failed_at', sa.DateTime(), nullable=True),
        sa.Column('grace_period_ends_at', sa.DateTime(), nullable=True),
        sa.Column('grace_reminder_day', sa.Integer(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('provider_subscription_id', sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_subscription_id'),
    )
    _base_indexes('subscriptions')
    op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=True)
    op.create_index(op.f('ix_subscriptions_plan_id'), 'subscriptions', ['plan_id'])
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'])
    op.create_index(op.f('ix_subscriptions_current_period_end'), 'subscriptions', ['current_period_end'])
    op.create_index(op.f('ix_subscriptions_plan_change_at'), 'subscriptions', ['plan_change_at'])
    op.create_index(op.f('ix_subscriptions_grace_period_ends_at'), 'subscriptions', ['grace_period_ends_at'])

    # 5. Usage tables (depend on users, balance_transactions)
    op.create_table(
        'sandbox_usage',
        *_base_columns(),
        *_usage_columns(),
        sa.Column('sandbox_id', sa.String(255), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_sandbox_usage_sandbox_id'), 'sandbox_usage', ['sandbox_id'])
    op.create_index(op.f('ix_sandbox_usage_end_time'), 'sandbox_usage', ['end_time'])

    op.create_table(
        'storage_usage',
        *_base_columns(),
        *_usage_columns(),
        sa.Column('storage_type', sa.String(20), nullable=False),
        sa.Column('size_gb', sa.Numeric(18, 6), nullable=False),
        sa.Column('operations', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'deployment_usage',
        *_base_columns(),
        *_usage_columns(),
        sa.Column('platform', sa.String(50), nullable=False, server_default='vercel'),
        sa.Column('deployment_id', sa.String(255), nullable=True),
        sa.Column('build_duration_minutes', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'database_usage',
        *_base_columns(),
        *_usage_columns(),
        sa.Column('usage_kind', sa.String(20), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 6), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'ai_usage',
        *_base_columns(),
        *_usage_columns(),
        sa.Column('model_id', sa.String(255), nullable=False),
        sa.Column('input_tokens', sa.Integer(), nullable=False),
        sa.Column('output_tokens', sa.Integer(), nullable=False),
        sa.Column('credits_consumed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('endpoint', sa.String(100), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_ai_usage_model_id'), 'ai_usage', ['model_id'])

    for table in USAGE_TABLES:
        _base_indexes(table)
        op.create_index(op.f(f'ix_{table}_user_id'), table, ['user_id'])
        op.create_index(op.f(f'ix_{table}_project_id'), table, ['project_id'])

    # 6. Webhook event log (no dependencies)
    op.create_table(
        'webhook_events',
        *_base_columns(),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False, server_default='razorpay'),
        sa.Column(
            'status',
            sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', name='webhookeventstatus'),
            nullable=False,
        ),
        sa.Column('payload', JSONB, nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('webhook_events')
    op.create_index(op.f('ix_webhook_events_event_id'), 'webhook_events', ['event_id'], unique=True)
    op.create_index(op.f('ix_webhook_events_event_type'), 'webhook_events', ['event_type'])
    op.create_index(op.f('ix_webhook_events_status'), 'webhook_events', ['status'])

    # 7. Payment transactions (depends on users)
    op.create_table(
        'payment_transactions',
        *_base_columns(),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column(
            'status',
            sa.Enum('PENDING', 'COMPLETED', 'FAILED', 'REFUNDED', name='paymenttransactionstatus'),
            nullable=False,
        ),
        sa.Column('payment_method', sa.String(50), nullable=False, server_default='razorpay'),
        sa.Column('provider_order_id', sa.String(255), nullable=True),
        sa.Column('provider_payment_id', sa.String(255), nullable=True),
        sa.Column('failure_code', sa.String(100), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('receipt_number', sa.String(50), nullable=True),
        sa.Column('metadata', JSONB, nullable=False, server_default='{}'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_payment_id'),
        sa.UniqueConstraint('receipt_number'),
    )
    _base_indexes('payment_transactions')
    op.create_index(op.f('ix_payment_transactions_user_id'), 'payment_transactions', ['user_id'])
    op.create_index(op.f('ix_payment_transactions_status'), 'payment_transactions', ['status'])
    op.create_index(op.f('ix_payment_transactions_provider_order_id'), 'payment_transactions', ['provider_order_id'])

    # 8. Receipt numbering (no dependencies)
    op.create_table(
        'receipt_sequences',
        sa.Column('financial_year', sa.String(7), nullable=False),
        sa.Column('last_number', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('financial_year'),
    )

    # 9. AI model pricing catalog (no dependencies)
    op.create_table(
        'ai_models',
        *_base_columns(),
        sa.Column('model_id', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('input_price_per_million', sa.Numeric(12, 6), nullable=False),
        sa.Column('output_price_per_million', sa.Numeric(12, 6), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id'),
    )
    _base_indexes('ai_models')
    op.create_index(op.f('ix_ai_models_model_id'), 'ai_models', ['model_id'], unique=True)


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_table('ai_models')
    op.drop_table('receipt_sequences')
    op.drop_table('payment_transactions')
    op.drop_table('webhook_events')
    for table in reversed(USAGE_TABLES):
        op.drop_table(table)
    op.drop_table('subscriptions')
    op.drop_table('balance_transactions')
    op.drop_table('plans')
    op.drop_table('users')

    op.execute('DROP TYPE IF EXISTS paymenttransactionstatus')
    op.execute('DROP TYPE IF EXISTS webhookeventstatus')
    op.execute('DROP TYPE IF EXISTS subscriptionstatus')
    op.execute('DROP TYPE IF EXISTS transactiontype')
