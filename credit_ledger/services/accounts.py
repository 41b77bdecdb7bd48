import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import utcnow
from ..models import Account
from .ledger import as_account_id, find_account_by_email, get_account, normalize_email
from .locks import account_lock
from .reconciler import apply_pending_grants

logger = logging.getLogger(__name__)


def create_account(db: Session, email: str, account_id=None) -> Account:
    """Create the ledger account for a new user, or return the existing one.

    Any payments this email made before signing up are granted here.
    """
    email = normalize_email(email)
    if not email:
        raise ValueError("email is required")

    account = find_account_by_email(db, email)
    if account is None:
        now = utcnow()
        account = Account(email=email, balance=0, created_at=now, updated_at=now)
        if account_id is not None:
            account.id = as_account_id(account_id)
        db.add(account)
        try:
            db.commit()
            logger.info(f"Created account {account.id} for {email}")
        except IntegrityError:
            # Concurrent signup for the same email won
            db.rollback()
            account = find_account_by_email(db, email)
            if account is None:
                raise

    applied = apply_pending_grants(db, account.id)
    if applied:
        db.refresh(account)
    return account


def delete_account(db: Session, account_id) -> None:
    """Remove an account with its batches, usage records, receipts and adjustments."""
    with account_lock(account_id):
        account = get_account(db, account_id, for_update=True)
        db.delete(account)
        db.commit()
    logger.info(f"Deleted account {account_id}")

