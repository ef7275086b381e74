"""create paywall tables

Revision ID: 001
Revises:
Create Date: 2026-10-19

Subscriptions, reader quota, access ledger, payments and the raw billing
event log.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum type names must match the lowercased models.py Enum class names
SUBSCRIPTION_TIER = postgresql.ENUM(
    'FREE', 'PAID',
    name='subscriptiontier',
    create_type=False,
)
SUBSCRIPTION_STATUS = postgresql.ENUM(
    'ACTIVE', 'PAST_DUE', 'CANCELED', 'INCOMPLETE', 'INCOMPLETE_EXPIRED', 'TRIALING', 'UNPAID',
    name='subscriptionstatus',
    create_type=False,
)
PAYMENT_STATUS = postgresql.ENUM(
    'succeeded', 'failed',
    name='paymentstatus',
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    SUBSCRIPTION_TIER.create(bind, checkfirst=True)
    SUBSCRIPTION_STATUS.create(bind, checkfirst=True)
    PAYMENT_STATUS.create(bind, checkfirst=True)

    # pw_users
    op.create_table(
        'pw_users',
        sa.Column('id', sa.UUID(), primary_key=True),
        sa.Column('articles_read_this_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('monthly_article_limit', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('last_article_reset_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=False),
        sa.CheckConstraint('articles_read_this_month >= 0', name='ck_pw_users_articles_non_negative'),
    )

    # pw_subscriptions
    op.create_table(
        'pw_subscriptions',
        sa.Column('id', sa.UUID(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.UUID(), sa.ForeignKey('pw_users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('tier', SUBSCRIPTION_TIER, nullable=False, server_default='FREE'),
        sa.Column('status', SUBSCRIPTION_STATUS, nullable=False, server_default='ACTIVE'),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('past_due_since', sa.DateTime(), nullable=True),
        sa.Column('external_customer_id', sa.String(255), nullable=True),
        sa.Column('external_subscription_id', sa.String(255), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_pw_subscriptions_status', 'pw_subscriptions', ['status'])

    # pw_article_access
    op.create_table(
        'pw_article_access',
        sa.Column('id', sa.UUID(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.UUID(), sa.ForeignKey('pw_users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('post_id', sa.String(100), nullable=False),
        sa.Column('accessed_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('user_id', 'post_id', name='uq_pw_article_access_user_post'),
    )

    # pw_payments
    op.create_table(
        'pw_payments',
        sa.Column('id', sa.UUID(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.UUID(), sa.ForeignKey('pw_users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subscription_id', sa.UUID(), sa.ForeignKey('pw_subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(10), nullable=True),
        sa.Column('status', PAYMENT_STATUS, nullable=False),
        sa.Column('external_payment_id', sa.String(255), nullable=True),
        sa.Column('external_invoice_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('external_invoice_id', 'status', name='uq_pw_payments_invoice_status'),
    )

    # pw_billing_events
    op.create_table(
        'pw_billing_events',
        sa.Column('id', sa.UUID(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('external_event_id', sa.String(255), nullable=False, unique=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('external_subscription_id', sa.String(255), nullable=True),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('received_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('pw_billing_events')
    op.drop_table('pw_payments')
    op.drop_table('pw_article_access')
    op.drop_index('ix_pw_subscriptions_status', table_name='pw_subscriptions')
    op.drop_table('pw_subscriptions')
    op.drop_table('pw_users')
    bind = op.get_bind()
    PAYMENT_STATUS.drop(bind, checkfirst=True)
    SUBSCRIPTION_STATUS.drop(bind, checkfirst=True)
    SUBSCRIPTION_TIER.drop(bind, checkfirst=True)
