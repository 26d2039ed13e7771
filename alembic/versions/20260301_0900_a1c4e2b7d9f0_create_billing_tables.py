"""create_billing_tables

Revision ID: a1c4e2b7d9f0
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c4e2b7d9f0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.TEXT(), nullable=False, server_default='creem'),
        sa.Column('event_id', sa.TEXT(), nullable=False),
        sa.Column('type', sa.TEXT(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('received_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('process_status', sa.TEXT(), nullable=False, server_default='pending'),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('error', sa.TEXT(), nullable=True),
        sa.Column('attempts', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('claim_token', sa.TEXT(), nullable=True),
        sa.Column('lease_expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event'),
        sa.CheckConstraint(
            "process_status IN ('pending', 'processing', 'success', 'failed', 'skipped', 'dead_letter')",
            name='ck_webhook_events_process_status',
        ),
    )
    # Claim scan: status filter + FIFO order
    op.create_index('idx_webhook_events_status_received', 'webhook_events', ['process_status', 'received_at'])
    op.create_index('idx_webhook_events_lease', 'webhook_events', ['process_status', 'lease_expires_at'])

    op.create_table(
        'orders',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.TEXT(), nullable=False, server_default='creem'),
        sa.Column('provider_checkout_id', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('amount', sa.NUMERIC(18, 4), nullable=True),
        sa.Column('currency', sa.TEXT(), nullable=False, server_default='USD'),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('user_id', sa.TEXT(), nullable=True),
        sa.Column('last_event_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_checkout_id', name='uq_orders_provider_checkout'),
    )
    op.create_index('idx_orders_user', 'orders', ['user_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.TEXT(), nullable=False, server_default='creem'),
        sa.Column('provider_subscription_id', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('current_period_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('user_id', sa.TEXT(), nullable=True),
        sa.Column('last_event_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_subscription_id', name='uq_subscriptions_provider_subscription'),
    )
    op.create_index('idx_subscriptions_user', 'subscriptions', ['user_id'])

    op.create_table(
        'entitlements',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('novel_id', sa.TEXT(), nullable=False),
        sa.Column('scope', sa.TEXT(), nullable=False),
        sa.Column('granted_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('source_event_id', sa.TEXT(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'novel_id', 'scope', name='uq_entitlements_user_novel_scope'),
    )
    op.create_index('idx_entitlements_user', 'entitlements', ['user_id'])


def downgrade() -> None:
    op.drop_index('idx_entitlements_user', table_name='entitlements')
    op.drop_table('entitlements')
    op.drop_index('idx_subscriptions_user', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('idx_orders_user', table_name='orders')
    op.drop_table('orders')
    op.drop_index('idx_webhook_events_lease', table_name='webhook_events')
    op.drop_index('idx_webhook_events_status_received', table_name='webhook_events')
    op.drop_table('webhook_events')
