"""Operator credit adjustments: goodwill grants and manual corrections.

Adds become ordinary batches under a generated ``manual:`` source key so they
drain and expire like purchased credits; deducts go through the FIFO engine.
Every adjustment leaves a CreditAdjustment row naming who did it and why.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import utcnow
from ..models import CreditAdjustment
from .atomic import run_atomic
from .deduction import deduct
from .ledger import add_batch, get_account
from .locks import account_lock

logger = logging.getLogger(__name__)

MANUAL_PLAN = "Manual"
ADJUSTMENT_TOOL = "admin_credit_adjustment"
OPERATIONS = ("add", "deduct")

DEFAULT_REASONS = {
    "add": "Admin credit addition",
    "deduct": "Admin credit deduction",
}


@dataclass
class AdjustmentResult:
    adjustment_id: uuid.UUID
    account_id: uuid.UUID
    operation: str
    credits: int
    balance_after: int
    batch_id: Optional[uuid.UUID] = None


def adjust_credits(
    db: Session,
    account_id,
    operation: str,
    credits: int,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AdjustmentResult:
    """
    Add or remove credits by hand and record the audit row.

    Raises:
        ValueError: unknown operation or non-positive credits
        AccountNotFoundError: no such account
        InsufficientCreditsError: a deduct larger than the live balance
    """
    operation = (operation or "").strip().lower()
    if operation not in OPERATIONS:
        raise ValueError(f"Invalid operation {operation!r}. Supported: add, deduct")
    if not isinstance(credits, int) or isinstance(credits, bool) or credits <= 0:
        raise ValueError(f"credits to adjust must be a positive integer, got {credits!r}")
    reason = (reason or "").strip() or DEFAULT_REASONS[operation]
    now = now or utcnow()

    logger.info(f"Credit adjustment requested by {actor or 'unknown'}: {operation} {credits} on account {account_id} ({reason})")

    if operation == "add":
        result = _add(db, account_id, credits, reason, actor, now)
    else:
        result = _deduct(db, account_id, credits, reason, actor, now)

    logger.info(
        f"Credit adjustment {result.adjustment_id}: {operation} {credits} on account {result.account_id}, "
        f"balance now {result.balance_after}"
    )
    return result


def _add(db: Session, account_id, credits: int, reason: str, actor: Optional[str], now: datetime) -> AdjustmentResult:
    adjustment_id = uuid.uuid4()
    source_event_id = f"manual:{adjustment_id.hex}"

    def attempt() -> AdjustmentResult:
        account = get_account(db, account_id, for_update=True)
        batch = add_batch(db, account, credits, source_event_id, MANUAL_PLAN, now)
        db.add(CreditAdjustment(
            id=adjustment_id,
            account_id=account.id,
            operation="add",
            credits=credits,
            reason=reason,
            actor=actor,
            batch_id=batch.id,
            balance_after=account.balance,
            created_at=now,
        ))
        result = AdjustmentResult(
            adjustment_id=adjustment_id,
            account_id=account.id,
            operation="add",
            credits=credits,
            balance_after=account.balance,
            batch_id=batch.id,
        )
        db.commit()
        return result

    with account_lock(account_id):
        return run_atomic(db, attempt, name=f"adjust_add:{account_id}")


def _deduct(db: Session, account_id, credits: int, reason: str, actor: Optional[str], now: datetime) -> AdjustmentResult:
    adjustment_id = uuid.uuid4()
    deduction = deduct(
        db,
        account_id,
        credits,
        tool=ADJUSTMENT_TOOL,
        description=reason,
        idempotency_key=f"manual:{adjustment_id.hex}",
        now=now,
    )

    def attempt() -> AdjustmentResult:
        db.add(CreditAdjustment(
            id=adjustment_id,
            account_id=deduction.account_id,
            operation="deduct",
            credits=credits,
            reason=reason,
            actor=actor,
            balance_after=deduction.remaining_balance,
            created_at=now,
        ))
        db.commit()
        return AdjustmentResult(
            adjustment_id=adjustment_id,
            account_id=deduction.account_id,
            operation="deduct",
            credits=credits,
            balance_after=deduction.remaining_balance,
        )

    return run_atomic(db, attempt, name=f"adjust_deduct:{account_id}")


def list_adjustments(db: Session, account_id, limit: int = 50) -> List[CreditAdjustment]:
    account = get_account(db, account_id)
    return list(db.execute(
        select(CreditAdjustment)
        .where(CreditAdjustment.account_id == account.id)
        .order_by(CreditAdjustment.created_at.desc())
        .limit(limit)
    ).scalars())
