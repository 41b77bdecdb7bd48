from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from credit_ledger.exceptions import InsufficientCreditsError, StorageConflictError, TransientFailureError
from credit_ledger.services.atomic import run_atomic


class TestRunAtomic:
    """Retry and rollback behaviour of atomic ledger writes."""

    def test_success_on_first_attempt(self):
        db = MagicMock()
        operation = MagicMock(return_value="done")

        assert run_atomic(db, operation, name="op", backoff_seconds=0) == "done"
        operation.assert_called_once()
        db.rollback.assert_not_called()

    def test_version_conflict_is_retried(self):
        db = MagicMock()
        operation = MagicMock(side_effect=[StaleDataError("version mismatch"), "done"])

        assert run_atomic(db, operation, name="op", attempts=3, backoff_seconds=0) == "done"
        assert operation.call_count == 2
        assert db.rollback.call_count == 1

    def test_unique_violation_is_retried(self):
        db = MagicMock()
        duplicate = IntegrityError("INSERT", {}, Exception("duplicate key"))
        operation = MagicMock(side_effect=[duplicate, StorageConflictError("op", "busy"), 42])

        assert run_atomic(db, operation, name="op", attempts=3, backoff_seconds=0) == 42
        assert operation.call_count == 3

    def test_exhausted_attempts_raise_transient_failure(self):
        db = MagicMock()
        operation = MagicMock(side_effect=StaleDataError("version mismatch"))

        with pytest.raises(TransientFailureError) as exc_info:
            run_atomic(db, operation, name="deduct:abc", attempts=3, backoff_seconds=0)

        assert operation.call_count == 3
        assert db.rollback.call_count == 3
        assert exc_info.value.details["attempts"] == 3
        assert isinstance(exc_info.value.__cause__, StaleDataError)

    def test_domain_errors_propagate_without_retry(self):
        db = MagicMock()
        operation = MagicMock(side_effect=InsufficientCreditsError(required=5, available=1))

        with pytest.raises(InsufficientCreditsError):
            run_atomic(db, operation, name="op", attempts=3, backoff_seconds=0)

        operation.assert_called_once()
        db.rollback.assert_called_once()
