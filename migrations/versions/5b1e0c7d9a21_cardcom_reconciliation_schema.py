"""cardcom reconciliation schema

Revision ID: 5b1e0c7d9a21
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '5b1e0c7d9a21'
down_revision = None
branch_labels = None
depends_on = None

JSON_DOC = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
MONEY = sa.Numeric(12, 2)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'plans',
        sa.Column('id', sa.String(length=32), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('renewal_amount', MONEY, nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default=sa.text("'ILS'")),
        sa.Column('operation', sa.String(length=32), nullable=False),
        sa.Column('period', sa.String(length=16), nullable=False),
        sa.Column('trial_months', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )

    op.create_table(
        'payment_sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reference', sa.String(length=64), nullable=False),
        sa.Column('low_profile_id', sa.String(length=64), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('payer_email', sa.String(length=320), nullable=True),
        sa.Column('plan_id', sa.String(length=32), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('operation', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('payment_url', sa.String(length=1024), nullable=True),
        sa.Column('transaction_id', sa.String(length=64), nullable=True),
        sa.Column('details', JSON_DOC, nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
    )
    op.create_index('ix_payment_sessions_reference', 'payment_sessions', ['reference'], unique=True)
    op.create_index('ix_payment_sessions_low_profile_id', 'payment_sessions', ['low_profile_id'], unique=True)
    op.create_index('ix_payment_sessions_user_id', 'payment_sessions', ['user_id'])
    op.create_index('ix_payment_sessions_payer_email', 'payment_sessions', ['payer_email'])
    op.create_index('ix_payment_sessions_status', 'payment_sessions', ['status'])

    op.create_table(
        'webhook_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('source', sa.String(length=32), nullable=False, server_default=sa.text("'cardcom'")),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('low_profile_id', sa.String(length=64), nullable=True),
        sa.Column('payload', JSON_DOC, nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column('processing_attempts', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('processing_result', JSON_DOC, nullable=True),
        sa.Column('resolved_user_id', sa.Integer(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(['resolved_user_id'], ['users.id']),
    )
    op.create_index('ix_webhook_records_source', 'webhook_records', ['source'])
    op.create_index('ix_webhook_records_reference', 'webhook_records', ['reference'])
    op.create_index('ix_webhook_records_low_profile_id', 'webhook_records', ['low_profile_id'])
    op.create_index('ix_webhook_records_processed', 'webhook_records', ['processed'])
    op.create_index('ix_webhook_records_next_attempt_at', 'webhook_records', ['next_attempt_at'])
    op.create_index('ix_webhook_records_created_at', 'webhook_records', ['created_at'])

    op.create_table(
        'payment_tokens',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token', sa.String(length=128), nullable=False),
        sa.Column('token_expiry', sa.Date(), nullable=True),
        sa.Column('card_brand', sa.String(length=32), nullable=True),
        sa.Column('card_last4', sa.String(length=4), nullable=True),
        sa.Column('card_month', sa.Integer(), nullable=True),
        sa.Column('card_year', sa.Integer(), nullable=True),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column('source_session_id', sa.Integer(), nullable=True),
        sa.Column('invalidated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(['source_session_id'], ['payment_sessions.id']),
        sa.UniqueConstraint('user_id', 'token', name='uq_payment_tokens_user_token'),
    )
    op.create_index('ix_payment_tokens_user_id', 'payment_tokens', ['user_id'])
    op.create_index('ix_payment_tokens_is_valid', 'payment_tokens', ['is_valid'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('plan_type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(), nullable=True),
        sa.Column('current_period_ends_at', sa.DateTime(), nullable=True),
        sa.Column('next_charge_at', sa.DateTime(), nullable=True),
        sa.Column('payment_method', JSON_DOC, nullable=False),
        sa.Column('payment_token_id', sa.Integer(), nullable=True),
        sa.Column('fail_count', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('source_session_id', sa.Integer(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('reminder_sent_for', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(['plan_type'], ['plans.id']),
        sa.ForeignKeyConstraint(['payment_token_id'], ['payment_tokens.id']),
        sa.ForeignKeyConstraint(['source_session_id'], ['payment_sessions.id']),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_plan_type', 'subscriptions', ['plan_type'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_next_charge_at', 'subscriptions', ['next_charge_at'])

    op.create_table(
        'payment_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('session_id', sa.Integer(), nullable=True),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('event', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('amount', MONEY, nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('transaction_id', sa.String(length=64), nullable=True),
        sa.Column('invoice_number', sa.String(length=64), nullable=True),
        sa.Column('payment_method', JSON_DOC, nullable=False),
        sa.Column('details', JSON_DOC, nullable=False),
        sa.Column('document_url', sa.String(length=1024), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['session_id'], ['payment_sessions.id']),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.UniqueConstraint('session_id', 'event', name='uq_payment_history_session_event'),
    )
    op.create_index('ix_payment_history_user_id', 'payment_history', ['user_id'])
    op.create_index('ix_payment_history_session_id', 'payment_history', ['session_id'])
    op.create_index('ix_payment_history_subscription_id', 'payment_history', ['subscription_id'])
    op.create_index('ix_payment_history_event', 'payment_history', ['event'])
    op.create_index('ix_payment_history_status', 'payment_history', ['status'])
    op.create_index('ix_payment_history_transaction_id', 'payment_history', ['transaction_id'])
    op.create_index('ix_payment_history_created_at', 'payment_history', ['created_at'])

    op.create_table(
        'email_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('to_email', sa.String(length=320), nullable=False),
        sa.Column('template', sa.String(length=64), nullable=False),
        sa.Column('subject', sa.String(length=200), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('meta', JSON_DOC, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
    )
    op.create_index('ix_email_logs_to_email', 'email_logs', ['to_email'])
    op.create_index('ix_email_logs_status', 'email_logs', ['status'])


def downgrade():
    op.drop_index('ix_email_logs_status', table_name='email_logs')
    op.drop_index('ix_email_logs_to_email', table_name='email_logs')
    op.drop_table('email_logs')

    for name in ('created_at', 'transaction_id', 'status', 'event', 'subscription_id', 'session_id', 'user_id'):
        op.drop_index(f'ix_payment_history_{name}', table_name='payment_history')
    op.drop_table('payment_history')

    for name in ('next_charge_at', 'status', 'plan_type', 'user_id'):
        op.drop_index(f'ix_subscriptions_{name}', table_name='subscriptions')
    op.drop_table('subscriptions')

    op.drop_index('ix_payment_tokens_is_valid', table_name='payment_tokens')
    op.drop_index('ix_payment_tokens_user_id', table_name='payment_tokens')
    op.drop_table('payment_tokens')

    for name in ('created_at', 'next_attempt_at', 'processed', 'low_profile_id', 'reference', 'source'):
        op.drop_index(f'ix_webhook_records_{name}', table_name='webhook_records')
    op.drop_table('webhook_records')

    for name in ('status', 'payer_email', 'user_id', 'low_profile_id', 'reference'):
        op.drop_index(f'ix_payment_sessions_{name}', table_name='payment_sessions')
    op.drop_table('payment_sessions')

    op.drop_table('plans')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
