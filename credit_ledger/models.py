import uuid
from sqlalchemy import (
    Column, String, DateTime, Integer, Boolean, ForeignKey, Text, JSON, Uuid,
    CheckConstraint, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from .db import Base, utcnow


class Account(Base):
    __tablename__ = "accounts"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, index=True, nullable=False)
    # Cached sum of live batch remainders; written only by ledger.sync_balance
    balance = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    batches = relationship("CreditBatch", back_populates="account", cascade="all, delete-orphan", passive_deletes=True)
    usage_records = relationship("UsageRecord", cascade="all, delete-orphan", passive_deletes=True)
    receipts = relationship("DeductionReceipt", cascade="all, delete-orphan", passive_deletes=True)
    adjustments = relationship("CreditAdjustment", cascade="all, delete-orphan", passive_deletes=True)
    subscriptions = relationship("Subscription", cascade="all, delete-orphan", passive_deletes=True)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )


class CreditBatch(Base):
    __tablename__ = "credit_batches"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    credits_granted = Column(Integer, nullable=False)
    credits_remaining = Column(Integer, nullable=False)
    plan_name = Column(String(100))
    granted_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime)  # null = never expires
    source_event_id = Column(String(255), unique=True, nullable=False)

    account = relationship("Account", back_populates="batches")

    __table_args__ = (
        CheckConstraint("credits_granted > 0", name="ck_batches_granted_positive"),
        CheckConstraint(
            "credits_remaining >= 0 AND credits_remaining <= credits_granted",
            name="ck_batches_remaining_bounds",
        ),
        Index("ix_batches_account_live", "account_id", "credits_remaining", "expires_at"),
    )


class UsageRecord(Base):
    """Append-only audit trail of successful deductions."""
    __tablename__ = "usage_records"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    tool = Column(String(120), nullable=False)
    credits_used = Column(Integer, nullable=False)
    description = Column(Text)
    used_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("credits_used > 0", name="ck_usage_credits_positive"),
        Index("ix_usage_account_used_at", "account_id", "used_at"),
    )


class PendingGrant(Base):
    """A paid grant waiting for its payer to sign up."""
    __tablename__ = "pending_grants"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), index=True, nullable=False)
    source_event_id = Column(String(255), unique=True, nullable=False)
    plan_name = Column(String(100))
    credits = Column(Integer, nullable=False)
    amount_paid_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    applied_at = Column(DateTime)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="SET NULL"))
    batch_id = Column(Uuid)


class DeductionReceipt(Base):
    """Outcome of a deduction made under a caller idempotency key."""
    __tablename__ = "deduction_receipts"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    credits_used = Column(Integer, nullable=False)
    previous_balance = Column(Integer, nullable=False)
    remaining_balance = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_receipts_account_key"),
    )


class CreditAdjustment(Base):
    """Audit row for every manual credit add or deduct made by an operator."""
    __tablename__ = "credit_adjustments"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    operation = Column(String(20), nullable=False)  # add | deduct
    credits = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    actor = Column(String(255))
    batch_id = Column(Uuid)  # batch created by an add
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_adjustments_credits_positive"),
        CheckConstraint("operation IN ('add', 'deduct')", name="ck_adjustments_operation"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_subscription_id = Column(String(255), unique=True, nullable=False)
    status = Column(String(50), nullable=False)
    current_period_end = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PaymentEventLog(Base):
    """Track payment webhook deliveries for idempotency and retries."""
    __tablename__ = "payment_event_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON)
    processed = Column(Boolean, default=False, nullable=False)
    processing_attempts = Column(Integer, default=0, nullable=False)
    error_message = Column(Text)
    processed_at = Column(DateTime)
    next_retry_at = Column(DateTime)
    dead_letter = Column(Boolean, default=False, nullable=False)
    granted = Column(Boolean)
    batch_id = Column(Uuid)
    outcome_reason = Column(String(100))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_event_processed", "processed", "created_at"),
        Index("ix_payment_event_type", "event_type"),
    )
