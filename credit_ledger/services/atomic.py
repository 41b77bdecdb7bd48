import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..exceptions import StorageConflictError, TransientFailureError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFLICT_ERRORS = (StaleDataError, IntegrityError, OperationalError, StorageConflictError)


def run_atomic(
    db: Session,
    operation: Callable[[], T],
    name: str,
    attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
) -> T:
    """
    Run ``operation`` as one unit of work on ``db``.

    The operation must commit its own changes. Any exception rolls the
    session back so no partial write survives. Storage conflicts (version
    mismatch, unique violation from a concurrent insert, lock timeout) are
    retried with exponential backoff; when the attempts run out the
    caller gets a TransientFailureError. Everything else propagates.
    """
    attempts = attempts or settings.storage_retry_attempts
    backoff_seconds = settings.storage_retry_backoff_seconds if backoff_seconds is None else backoff_seconds

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except CONFLICT_ERRORS as e:
            db.rollback()
            if attempt >= attempts:
                logger.error(f"{name}: giving up after {attempt} conflicting attempts: {e}")
                raise TransientFailureError(name, attempt) from e
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(f"{name}: storage conflict on attempt {attempt}, retrying in {delay:.3f}s: {e}")
            time.sleep(delay)
        except Exception:
            db.rollback()
            raise
