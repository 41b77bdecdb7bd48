from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import utcnow
from ..exceptions import InsufficientCreditsError, StorageConflictError
from ..models import DeductionReceipt
from .atomic import run_atomic
from .ledger import active_batches, available_credits, get_account, sync_balance
from .locks import account_lock
from .usage import UsageLogger, usage_logger as default_usage_logger

logger = logging.getLogger(__name__)


@dataclass
class DeductionResult:
    success: bool
    account_id: uuid.UUID
    credits_used: int
    previous_balance: int
    remaining_balance: int
    usage_record_id: Optional[uuid.UUID] = None
    replayed: bool = False


def deduct(
    db: Session,
    account_id,
    credits: int,
    tool: str = "general",
    description: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
    usage_logger: Optional[UsageLogger] = None,
) -> DeductionResult:
    """
    Take ``credits`` from the account, draining the soonest-expiring batch first.

    Either every batch update and the balance change commit together or
    nothing does. With an ``idempotency_key`` a repeated call returns the
    first call's outcome instead of charging again.

    Raises:
        ValueError: credits is not a positive integer
        AccountNotFoundError: no such account
        InsufficientCreditsError: live batches cannot cover the request
        TransientFailureError: the write kept conflicting with other writers
    """
    if not isinstance(credits, int) or isinstance(credits, bool) or credits <= 0:
        raise ValueError(f"credits to deduct must be a positive integer, got {credits!r}")

    def attempt() -> DeductionResult:
        return _deduct_once(db, account_id, credits, idempotency_key, now or utcnow())

    with account_lock(account_id):
        result = run_atomic(db, attempt, name=f"deduct:{account_id}")

    if result.replayed:
        logger.info(f"Replayed deduction {idempotency_key} for account {account_id}")
        return result

    logger.info(
        f"Deducted {credits} credits from account {account_id} via {tool}: "
        f"{result.previous_balance} -> {result.remaining_balance}"
    )
    result.usage_record_id = (usage_logger or default_usage_logger).record(
        account_id=result.account_id,
        tool=tool,
        credits_used=credits,
        description=description,
    )
    return result


def _deduct_once(db: Session, account_id, credits: int, idempotency_key: Optional[str], now: datetime) -> DeductionResult:
    account = get_account(db, account_id, for_update=True)

    if idempotency_key:
        receipt = db.execute(
            select(DeductionReceipt).where(
                DeductionReceipt.account_id == account.id,
                DeductionReceipt.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()
        if receipt is not None:
            replay = DeductionResult(
                success=True,
                account_id=account.id,
                credits_used=receipt.credits_used,
                previous_balance=receipt.previous_balance,
                remaining_balance=receipt.remaining_balance,
                replayed=True,
            )
            db.rollback()
            return replay

    batches = active_batches(db, account.id, now, for_update=True)
    available = available_credits(batches)
    if available < credits:
        raise InsufficientCreditsError(required=credits, available=available, account_id=str(account.id))

    outstanding = credits
    for batch in batches:
        if outstanding == 0:
            break
        take = min(batch.credits_remaining, outstanding)
        batch.credits_remaining -= take
        outstanding -= take
    if outstanding:
        raise StorageConflictError("deduct", f"batches for account {account.id} changed while draining")

    remaining = sync_balance(account, batches, now)
    if idempotency_key:
        db.add(DeductionReceipt(
            account_id=account.id,
            idempotency_key=idempotency_key,
            credits_used=credits,
            previous_balance=available,
            remaining_balance=remaining,
            created_at=now,
        ))
    db.commit()

    return DeductionResult(
        success=True,
        account_id=account.id,
        credits_used=credits,
        previous_balance=available,
        remaining_balance=remaining,
    )
