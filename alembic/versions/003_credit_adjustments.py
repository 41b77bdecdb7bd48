"""Add credit adjustment audit table

Revision ID: 003_credit_adjustments
Revises: 002_payment_events_and_pending_grants
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers
revision = '003_credit_adjustments'
down_revision = '002_payment_events_and_pending_grants'
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        'credit_adjustments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('operation', sa.String(20), nullable=False),
        sa.Column('credits', sa.Integer, nullable=False),
        sa.Column('reason', sa.Text, nullable=False),
        sa.Column('actor', sa.String(255)),
        sa.Column('batch_id', UUID(as_uuid=True)),
        sa.Column('balance_after', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.CheckConstraint('credits > 0', name='ck_adjustments_credits_positive'),
        sa.CheckConstraint("operation IN ('add', 'deduct')", name='ck_adjustments_operation'),
    )
    op.create_index('ix_credit_adjustments_account_id', 'credit_adjustments', ['account_id'])


def downgrade() -> None:
    op.drop_index('ix_credit_adjustments_account_id', table_name='credit_adjustments')
    op.drop_table('credit_adjustments')
