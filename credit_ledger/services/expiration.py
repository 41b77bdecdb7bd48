from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import math

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..config import settings
from ..db import utcnow
from ..models import CreditBatch, Subscription
from .ledger import active_batches, get_account

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class ExpirationInfo:
    expires_at: datetime
    days_until_expiry: int
    is_expiring_soon: bool
    is_expired: bool


def get_expiration_info(db: Session, account_id, now: Optional[datetime] = None) -> Optional[ExpirationInfo]:
    """When the account's usable credits run out, for the dashboard warning.

    An active subscription's period end takes precedence over batch expiry.
    Otherwise the soonest live batch decides; leftovers in batches that
    already expired only count once no live batch remains. Read only.
    """
    now = now or utcnow()
    account = get_account(db, account_id)

    expires_at = db.execute(
        select(func.max(Subscription.current_period_end)).where(
            Subscription.account_id == account.id,
            Subscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
            Subscription.current_period_end.is_not(None),
        )
    ).scalar_one_or_none()

    if expires_at is None:
        live = active_batches(db, account.id, now)
        if live:
            # never-expiring batches sort last, so None here means nothing expires
            expires_at = live[0].expires_at
        else:
            expires_at = db.execute(
                select(func.max(CreditBatch.expires_at)).where(
                    CreditBatch.account_id == account.id,
                    CreditBatch.credits_remaining > 0,
                    CreditBatch.expires_at <= now,
                )
            ).scalar_one_or_none()

    if expires_at is None:
        return None

    days = math.ceil((expires_at - now).total_seconds() / SECONDS_PER_DAY)
    return ExpirationInfo(
        expires_at=expires_at,
        days_until_expiry=days,
        is_expiring_soon=days <= settings.expiring_soon_days,
        is_expired=days <= 0,
    )
