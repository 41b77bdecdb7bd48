"""Add payment event log and pending grants

Revision ID: 002_payment_events_and_pending_grants
Revises: 001_ledger_schema
Create Date: 2026-09-14 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '002_payment_events_and_pending_grants'
down_revision = '001_ledger_schema'
branch_labels = None
depends_on = None

def upgrade() -> None:
    # Ensure required extension for gen_random_uuid()
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    op.create_table(
        'payment_event_log',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('event_id', sa.String(255), unique=True, nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('event_data', JSONB),
        sa.Column('processed', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('processing_attempts', sa.Integer, server_default=sa.text('0'), nullable=False),
        sa.Column('error_message', sa.Text),
        sa.Column('processed_at', sa.DateTime),
        sa.Column('next_retry_at', sa.DateTime),
        sa.Column('dead_letter', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('granted', sa.Boolean),
        sa.Column('batch_id', UUID(as_uuid=True)),
        sa.Column('outcome_reason', sa.String(100)),
        sa.Column('created_at', sa.DateTime, server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.CheckConstraint('processing_attempts >= 0', name='ck_processing_attempts_non_negative')
    )
    op.create_index('ix_payment_event_processed', 'payment_event_log', ['processed', 'created_at'])
    op.create_index('ix_payment_event_type', 'payment_event_log', ['event_type'])
    op.create_index('ix_payment_event_retry', 'payment_event_log', ['next_retry_at'])
    op.create_index('ix_payment_event_dead_letter', 'payment_event_log', ['dead_letter'])

    # Grants paid for before the payer signed up, keyed by email
    op.create_table(
        'pending_grants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('source_event_id', sa.String(255), unique=True, nullable=False),
        sa.Column('plan_name', sa.String(100)),
        sa.Column('credits', sa.Integer, nullable=False),
        sa.Column('amount_paid_cents', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.Column('applied_at', sa.DateTime),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='SET NULL')),
        sa.Column('batch_id', UUID(as_uuid=True))
    )
    op.create_index('ix_pending_grants_email', 'pending_grants', ['email'])
    op.create_index('ix_pending_grants_unapplied', 'pending_grants', ['email'], postgresql_where=sa.text('applied_at IS NULL'))

def downgrade() -> None:
    op.drop_index('ix_pending_grants_unapplied', 'pending_grants')
    op.drop_index('ix_pending_grants_email', 'pending_grants')
    op.drop_table('pending_grants')

    op.drop_index('ix_payment_event_dead_letter', 'payment_event_log')
    op.drop_index('ix_payment_event_retry', 'payment_event_log')
    op.drop_index('ix_payment_event_type', 'payment_event_log')
    op.drop_index('ix_payment_event_processed', 'payment_event_log')
    op.drop_table('payment_event_log')
