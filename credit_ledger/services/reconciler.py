"""Turn payment notifications into credit batches, exactly once per event.

Deliveries are at-least-once and may arrive before the payer has an
account. The unique ``source_event_id`` on batches and pending grants is
what makes a repeated or concurrent delivery collapse into one grant.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import utcnow
from ..models import CreditBatch, PendingGrant
from .atomic import run_atomic
from .ledger import add_batch, find_account_by_email, find_batch_by_source, get_account, normalize_email
from .locks import account_lock
from .pricing import CUSTOM_PLAN, PlanGrant, resolve_plan

logger = logging.getLogger(__name__)

AWAITING_ACCOUNT = "awaiting_account"


@dataclass
class PaymentEvent:
    event_id: str
    customer_email: Optional[str]
    amount_paid_cents: Optional[int]
    timestamp: Optional[datetime] = None


@dataclass
class ReconcileResult:
    granted: bool
    batch_id: Optional[uuid.UUID] = None
    pending_grant_id: Optional[uuid.UUID] = None
    account_id: Optional[uuid.UUID] = None
    credits: int = 0
    plan_name: Optional[str] = None
    duplicate: bool = False
    needs_review: bool = False
    reason: Optional[str] = None


def reconcile(db: Session, event: PaymentEvent, now: Optional[datetime] = None) -> ReconcileResult:
    if not event.event_id:
        raise ValueError("payment event has no id")
    now = now or utcnow()

    existing = _existing_outcome(db, event.event_id)
    if existing is not None:
        logger.info(f"Payment event {event.event_id} already reconciled, returning stored outcome")
        return existing

    email = normalize_email(event.customer_email)
    if not email:
        logger.error(f"Payment event {event.event_id} has no customer email, cannot grant credits")
        return ReconcileResult(granted=False, reason="missing_customer_email")
    if not event.amount_paid_cents or event.amount_paid_cents <= 0:
        logger.warning(f"Payment event {event.event_id} paid {event.amount_paid_cents} cents, nothing to grant")
        return ReconcileResult(granted=False, reason="non_positive_amount")

    plan = resolve_plan(event.amount_paid_cents)
    if not plan.mapped:
        logger.warning(
            f"UnmappedPaymentAmount: {event.amount_paid_cents} cents on event {event.event_id} "
            f"granted {plan.credits} credits by fallback, flagged for manual review"
        )

    account = find_account_by_email(db, email)
    if account is not None:
        return _grant(db, account.id, event, plan, now)
    return _defer(db, email, event, plan, now)


def apply_pending_grants(db: Session, account_id, now: Optional[datetime] = None) -> List[CreditBatch]:
    """Convert every unapplied pending grant for the account's email into a batch."""
    now = now or utcnow()

    def attempt() -> List[CreditBatch]:
        account = get_account(db, account_id, for_update=True)
        pending = db.execute(
            select(PendingGrant)
            .where(PendingGrant.email == account.email, PendingGrant.applied_at.is_(None))
            .order_by(PendingGrant.created_at.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()

        created = []
        for grant in pending:
            batch = find_batch_by_source(db, grant.source_event_id)
            if batch is None:
                batch = add_batch(db, account, grant.credits, grant.source_event_id, grant.plan_name, now)
                created.append(batch)
            grant.applied_at = now
            grant.account_id = account.id
            grant.batch_id = batch.id
        db.commit()
        return created

    with account_lock(account_id):
        created = run_atomic(db, attempt, name=f"apply_pending:{account_id}")

    if created:
        logger.info(f"Applied {len(created)} pending grant(s) to account {account_id}")
    return created


def _existing_outcome(db: Session, event_id: str) -> Optional[ReconcileResult]:
    batch = find_batch_by_source(db, event_id)
    if batch is not None:
        return ReconcileResult(
            granted=True,
            batch_id=batch.id,
            account_id=batch.account_id,
            credits=batch.credits_granted,
            plan_name=batch.plan_name,
            duplicate=True,
            needs_review=batch.plan_name == CUSTOM_PLAN,
        )
    pending = db.execute(
        select(PendingGrant).where(PendingGrant.source_event_id == event_id)
    ).scalar_one_or_none()
    if pending is not None:
        return ReconcileResult(
            granted=False,
            pending_grant_id=pending.id,
            credits=pending.credits,
            plan_name=pending.plan_name,
            duplicate=True,
            needs_review=pending.plan_name == CUSTOM_PLAN,
            reason=AWAITING_ACCOUNT,
        )
    return None


def _grant(db: Session, account_id, event: PaymentEvent, plan: PlanGrant, now: datetime) -> ReconcileResult:
    def attempt() -> ReconcileResult:
        existing = _existing_outcome(db, event.event_id)
        if existing is not None:
            db.rollback()
            return existing
        account = get_account(db, account_id, for_update=True)
        batch = add_batch(db, account, plan.credits, event.event_id, plan.plan_name, now)
        result = ReconcileResult(
            granted=True,
            batch_id=batch.id,
            account_id=account.id,
            credits=plan.credits,
            plan_name=plan.plan_name,
            needs_review=not plan.mapped,
        )
        db.commit()
        return result

    with account_lock(account_id):
        result = run_atomic(db, attempt, name=f"reconcile:{event.event_id}")

    if not result.duplicate:
        logger.info(f"Granted {plan.credits} credits ({plan.plan_name}) to account {account_id} for event {event.event_id}")
    return result


def _defer(db: Session, email: str, event: PaymentEvent, plan: PlanGrant, now: datetime) -> ReconcileResult:
    def attempt() -> ReconcileResult:
        existing = _existing_outcome(db, event.event_id)
        if existing is not None:
            db.rollback()
            return existing
        pending = PendingGrant(
            email=email,
            source_event_id=event.event_id,
            plan_name=plan.plan_name,
            credits=plan.credits,
            amount_paid_cents=event.amount_paid_cents,
            created_at=now,
        )
        db.add(pending)
        db.flush()
        result = ReconcileResult(
            granted=False,
            pending_grant_id=pending.id,
            credits=plan.credits,
            plan_name=plan.plan_name,
            needs_review=not plan.mapped,
            reason=AWAITING_ACCOUNT,
        )
        db.commit()
        return result

    result = run_atomic(db, attempt, name=f"defer:{event.event_id}")
    if result.duplicate:
        return result
    logger.info(f"No account for {email} yet, stored pending grant of {plan.credits} credits for event {event.event_id}")

    # The account may have been created between the lookup and the insert
    account = find_account_by_email(db, email)
    if account is not None:
        apply_pending_grants(db, account.id, now)
        applied = find_batch_by_source(db, event.event_id)
        if applied is not None:
            return ReconcileResult(
                granted=True,
                batch_id=applied.id,
                account_id=applied.account_id,
                credits=applied.credits_granted,
                plan_name=applied.plan_name,
                needs_review=result.needs_review,
            )
    return result
