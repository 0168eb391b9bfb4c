"""initial licensing schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, licenses, jvzoo_transactions and credit_usage_logs."""

    # ========================================================================
    # users
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('email_verified', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_via', sa.String(50), nullable=False, server_default='signup'),
        sa.Column('jvzoo_customer_id', sa.String(255), nullable=True),
        sa.Column('credits_used_period', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_credit_reset', sa.DateTime(timezone=True), nullable=True),
        sa.Column('preferred_image_model', sa.String(50), nullable=False, server_default='gemini'),
        sa.Column('image_quality', sa.String(20), nullable=False, server_default='standard'),
        sa.Column('default_tone', sa.String(100), nullable=False, server_default='professional yet approachable'),
        sa.Column('default_aspect_ratio', sa.String(20), nullable=False, server_default='square'),
        sa.Column('theme', sa.String(50), nullable=False, server_default='clean-slate'),
        sa.Column('theme_mode', sa.String(10), nullable=False, server_default='light'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('credits_used_period >= 0', name='ck_users_credits_used_non_negative'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('idx_users_email_lower', 'users', [sa.text('lower(email)')])
    op.create_index('idx_users_next_credit_reset', 'users', ['next_credit_reset'])

    # ========================================================================
    # licenses
    # ========================================================================
    op.create_table(
        'licenses',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('license_key', sa.String(19), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', sa.String(100), nullable=False),
        sa.Column('tier', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('external_transaction_id', sa.String(255), nullable=False),
        sa.Column('external_receipt_id', sa.String(255), nullable=True),
        sa.Column('external_product_code', sa.String(50), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('purchase_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('is_recurring', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('activations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_activations', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('last_validated', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credits_allocated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('chargeback_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "status IN ('active', 'refunded', 'chargeback', 'cancelled')",
            name='ck_licenses_status',
        ),
        sa.CheckConstraint('activations >= 0', name='ck_licenses_activations_non_negative'),
        sa.CheckConstraint('activations <= max_activations', name='ck_licenses_activations_within_max'),
        sa.CheckConstraint('credits_allocated >= -1', name='ck_licenses_credits_allocated_valid'),
        sa.UniqueConstraint('license_key', name='uq_licenses_license_key'),
        sa.UniqueConstraint('external_transaction_id', name='uq_licenses_external_transaction_id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_licenses_user', ondelete='RESTRICT'),
    )
    op.create_index('ix_licenses_user_id', 'licenses', ['user_id'])
    op.create_index('idx_licenses_user_status', 'licenses', ['user_id', 'status'])

    # ========================================================================
    # jvzoo_transactions (IPN audit log)
    # ========================================================================
    op.create_table(
        'jvzoo_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('idempotency_key', sa.String(300), nullable=False),
        sa.Column('external_transaction_id', sa.String(255), nullable=False),
        sa.Column('external_receipt_id', sa.String(255), nullable=True),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('external_product_code', sa.String(50), nullable=False),
        sa.Column('customer_email', sa.String(255), nullable=False),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('customer_country', sa.String(10), nullable=True),
        sa.Column('customer_state', sa.String(100), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('affiliate_commission', sa.Numeric(10, 2), nullable=True),
        sa.Column('vendor_earnings', sa.Numeric(10, 2), nullable=True),
        sa.Column('verification_hash', sa.String(64), nullable=False),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('raw_payload', JSONB(), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('idempotency_key', name='uq_jvzoo_transactions_idempotency_key'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_jvzoo_transactions_user', ondelete='SET NULL'),
    )
    op.create_index('idx_jvzoo_transactions_external_id', 'jvzoo_transactions', ['external_transaction_id'])
    op.create_index(
        'idx_jvzoo_transactions_failed',
        'jvzoo_transactions',
        ['created_at'],
        postgresql_where=sa.text('processed = false'),
    )

    # ========================================================================
    # credit_usage_logs
    # ========================================================================
    op.create_table(
        'credit_usage_logs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('action_type', sa.String(50), nullable=True),
        sa.Column('unlimited', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('used_before', sa.Integer(), nullable=False),
        sa.Column('used_after', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('amount > 0', name='ck_credit_usage_amount_positive'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_credit_usage_user', ondelete='CASCADE'),
    )
    op.create_index('idx_credit_usage_user_created', 'credit_usage_logs', ['user_id', 'created_at'])


def downgrade() -> None:
    """Drop licensing schema."""
    op.drop_table('credit_usage_logs')
    op.drop_table('jvzoo_transactions')
    op.drop_table('licenses')
    op.drop_table('users')
