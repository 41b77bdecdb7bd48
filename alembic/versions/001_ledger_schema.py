"""ledger schema: accounts, credit batches, usage records
Revision ID: 001_ledger_schema
Revises: 
Create Date: 2026-09-14 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '001_ledger_schema'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table('accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('balance', sa.Integer(), server_default='0', nullable=False),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.CheckConstraint('balance >= 0', name='ck_accounts_balance_non_negative')
    )
    op.create_index('ix_accounts_email', 'accounts', ['email'], unique=True)

    op.create_table('credit_batches',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('credits_granted', sa.Integer(), nullable=False),
        sa.Column('credits_remaining', sa.Integer(), nullable=False),
        sa.Column('plan_name', sa.String(length=100)),
        sa.Column('granted_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime()),
        sa.Column('source_event_id', sa.String(length=255), nullable=False, unique=True),
        sa.CheckConstraint('credits_granted > 0', name='ck_batches_granted_positive'),
        sa.CheckConstraint('credits_remaining >= 0 AND credits_remaining <= credits_granted', name='ck_batches_remaining_bounds')
    )
    op.create_index('ix_credit_batches_account_id', 'credit_batches', ['account_id'])
    op.create_index('ix_batches_account_live', 'credit_batches', ['account_id', 'credits_remaining', 'expires_at'])

    op.create_table('usage_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tool', sa.String(length=120), nullable=False),
        sa.Column('credits_used', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('used_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('credits_used > 0', name='ck_usage_credits_positive')
    )
    op.create_index('ix_usage_account_used_at', 'usage_records', ['account_id', 'used_at'])

    op.create_table('deduction_receipts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('credits_used', sa.Integer(), nullable=False),
        sa.Column('previous_balance', sa.Integer(), nullable=False),
        sa.Column('remaining_balance', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('account_id', 'idempotency_key', name='uq_receipts_account_key')
    )

    op.create_table('subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider_subscription_id', sa.String(length=255), nullable=False, unique=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('current_period_end', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime(), nullable=False)
    )
    op.create_index('ix_subscriptions_account_id', 'subscriptions', ['account_id'])

def downgrade():
    op.drop_index('ix_subscriptions_account_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('deduction_receipts')
    op.drop_index('ix_usage_account_used_at', table_name='usage_records')
    op.drop_table('usage_records')
    op.drop_index('ix_batches_account_live', table_name='credit_batches')
    op.drop_index('ix_credit_batches_account_id', table_name='credit_batches')
    op.drop_table('credit_batches')
    op.drop_index('ix_accounts_email', table_name='accounts')
    op.drop_table('accounts')
