"""Create billing reconciliation tables

Revision ID: 0001_billing_tables
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_billing_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create subscription store, validation ledger and run metrics tables."""

    op.create_table(
        'user_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),

        # Authority
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('provider_subscription_id', sa.String(), nullable=True),

        # Entitlement
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('tier_id', sa.Integer, nullable=False, server_default='2'),

        # Billing period dates
        sa.Column('current_period_start', sa.DateTime(timezone=True)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'])
    op.create_index(
        'ix_user_subscriptions_provider_subscription_id',
        'user_subscriptions',
        ['provider_subscription_id'],
    )
    op.create_index('ix_user_subscriptions_provider_status', 'user_subscriptions', ['provider', 'status'])
    op.create_index(
        'ix_user_subscriptions_status_period_end',
        'user_subscriptions',
        ['status', 'current_period_end'],
    )

    op.create_table(
        'iap_validation_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('receipt_hash', sa.String(64), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('environment', sa.String(20), nullable=False, server_default='production'),
        sa.Column('is_conclusive', sa.Boolean, nullable=False, server_default=sa.text('true')),
        sa.Column('raw_receipt', sa.Text, nullable=False),
        sa.Column('validation_response', postgresql.JSONB, server_default=sa.text("'{}'::jsonb")),
        sa.Column('validation_duration_ms', sa.Integer, nullable=False, server_default='0'),
        sa.Column('validated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_iap_validation_history_user_id', 'iap_validation_history', ['user_id'])
    op.create_index(
        'ix_iap_validation_transaction_status',
        'iap_validation_history',
        ['transaction_id', 'status'],
    )

    # One outcome-determining row per proof; inconclusive attempts are audit only
    op.create_index(
        'uq_iap_validation_receipt_platform',
        'iap_validation_history',
        ['receipt_hash', 'platform'],
        unique=True,
        postgresql_where=sa.text('is_conclusive'),
    )

    op.create_table(
        'reconciliation_metrics',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('total_checked', sa.Integer, nullable=False, server_default='0'),
        sa.Column('expired_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('updated_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('errors_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('drift_detected', sa.Integer, nullable=False, server_default='0'),
        sa.Column('duration_ms', sa.Integer, nullable=False, server_default='0'),
        sa.Column('reconciled_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_reconciliation_metrics_reconciled_at', 'reconciliation_metrics', ['reconciled_at'])

    # Service role only; clients never read these tables directly
    for table in ('user_subscriptions', 'iap_validation_history', 'reconciliation_metrics'):
        op.execute(f'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY')

    op.execute("""
        CREATE POLICY "Users can view own subscriptions"
        ON user_subscriptions FOR SELECT
        TO authenticated
        USING (user_id = auth.uid())
    """)


def downgrade() -> None:
    """Drop billing reconciliation tables."""
    op.execute('DROP POLICY IF EXISTS "Users can view own subscriptions" ON user_subscriptions')

    op.drop_index('ix_reconciliation_metrics_reconciled_at', table_name='reconciliation_metrics')
    op.drop_table('reconciliation_metrics')

    op.drop_index('uq_iap_validation_receipt_platform', table_name='iap_validation_history')
    op.drop_index('ix_iap_validation_transaction_status', table_name='iap_validation_history')
    op.drop_index('ix_iap_validation_history_user_id', table_name='iap_validation_history')
    op.drop_table('iap_validation_history')

    op.drop_index('ix_user_subscriptions_status_period_end', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_provider_status', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_provider_subscription_id', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_user_id', table_name='user_subscriptions')
    op.drop_table('user_subscriptions')
