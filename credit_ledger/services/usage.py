from datetime import datetime
from typing import Callable, List, Optional
import logging
import threading
import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..db import SessionLocal, utcnow
from ..models import UsageRecord

logger = logging.getLogger(__name__)


class UsageLogger:
    """Append usage records outside the deduction transaction.

    A failed write never undoes the deduction that triggered it; it is
    logged and counted so /ops/metrics can expose it.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self.failure_count = 0
        self._failure_lock = threading.Lock()

    def record(
        self,
        account_id,
        tool: str,
        credits_used: int,
        description: Optional[str] = None,
        used_at: Optional[datetime] = None,
    ) -> Optional[uuid.UUID]:
        session = None
        try:
            session = self.session_factory()
            record = UsageRecord(
                account_id=account_id,
                tool=tool,
                credits_used=credits_used,
                description=description,
                used_at=used_at or utcnow(),
            )
            session.add(record)
            session.commit()
            return record.id
        except Exception:
            with self._failure_lock:
                self.failure_count += 1
            logger.exception(f"Failed to log usage for account {account_id}: {credits_used} credits via {tool}")
            if session is not None:
                session.rollback()
            return None
        finally:
            if session is not None:
                session.close()


usage_logger = UsageLogger()


def usage_since(db: Session, account_id, since: datetime) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(UsageRecord.credits_used), 0)).where(
            UsageRecord.account_id == account_id,
            UsageRecord.used_at >= since,
        )
    ).scalar_one()
    return int(total)


def recent_usage(db: Session, account_id, limit: int = 50) -> List[UsageRecord]:
    return list(db.execute(
        select(UsageRecord)
        .where(UsageRecord.account_id == account_id)
        .order_by(UsageRecord.used_at.desc())
        .limit(limit)
    ).scalars())
