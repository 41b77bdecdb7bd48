from datetime import datetime, timedelta
from typing import List, Optional
import logging
import uuid

from sqlalchemy import case, select
from sqlalchemy.orm import Session

from ..config import settings
from ..db import utcnow
from ..exceptions import AccountNotFoundError
from ..models import Account, CreditBatch

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def as_account_id(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise AccountNotFoundError(str(value))


def get_account(db: Session, account_id, for_update: bool = False) -> Account:
    query = select(Account).where(Account.id == as_account_id(account_id))
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    account = db.execute(query).scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(str(account_id))
    return account


def find_account_by_email(db: Session, email: str) -> Optional[Account]:
    return db.execute(
        select(Account).where(Account.email == normalize_email(email))
    ).scalar_one_or_none()


def active_batches(db: Session, account_id, now: Optional[datetime] = None, for_update: bool = False) -> List[CreditBatch]:
    """Batches that can still fund a deduction, in consumption order."""
    now = now or utcnow()
    query = (
        select(CreditBatch)
        .where(
            CreditBatch.account_id == account_id,
            CreditBatch.credits_remaining > 0,
            (CreditBatch.expires_at.is_(None)) | (CreditBatch.expires_at > now),
        )
        .order_by(
            # soonest expiry first, never-expiring batches last
            case((CreditBatch.expires_at.is_(None), 1), else_=0),
            CreditBatch.expires_at.asc(),
            CreditBatch.granted_at.asc(),
            CreditBatch.id.asc(),
        )
        .execution_options(populate_existing=True)
    )
    if for_update:
        query = query.with_for_update()
    return list(db.execute(query).scalars())


def available_credits(batches: List[CreditBatch]) -> int:
    return sum(b.credits_remaining for b in batches)


def get_balance(db: Session, account_id, now: Optional[datetime] = None) -> int:
    """Effective balance: what the live batches can actually fund right now."""
    account = get_account(db, account_id)
    return available_credits(active_batches(db, account.id, now))


def sync_balance(account: Account, batches: List[CreditBatch], now: Optional[datetime] = None) -> int:
    """Recompute the cached balance from live batches. The only writer of Account.balance."""
    account.balance = available_credits(batches)
    account.updated_at = now or utcnow()
    return account.balance


def add_batch(
    db: Session,
    account: Account,
    credits: int,
    source_event_id: str,
    plan_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CreditBatch:
    """Allocate a new batch and refresh the account balance. Does not commit."""
    now = now or utcnow()
    batch = CreditBatch(
        account_id=account.id,
        credits_granted=credits,
        credits_remaining=credits,
        plan_name=plan_name,
        granted_at=now,
        expires_at=now + timedelta(days=settings.credit_expiry_days),
        source_event_id=source_event_id,
    )
    db.add(batch)
    db.flush()
    sync_balance(account, active_batches(db, account.id, now), now)
    db.flush()
    logger.info(f"Allocated batch {batch.id}: {credits} credits ({plan_name}) to account {account.id} from {source_event_id}")
    return batch


def find_batch_by_source(db: Session, source_event_id: str) -> Optional[CreditBatch]:
    return db.execute(
        select(CreditBatch).where(CreditBatch.source_event_id == source_event_id)
    ).scalar_one_or_none()
