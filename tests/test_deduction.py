import threading
import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from credit_ledger.db import SessionLocal, utcnow
from credit_ledger.exceptions import AccountNotFoundError, InsufficientCreditsError
from credit_ledger.models import Account, CreditBatch, UsageRecord
from credit_ledger.services.deduction import deduct
from credit_ledger.services.ledger import get_balance
from credit_ledger.services.usage import UsageLogger


def _remaining(db: Session, batch: CreditBatch) -> int:
    db.refresh(batch)
    return batch.credits_remaining


def _assert_conserved(db: Session, account: Account):
    db.refresh(account)
    total = sum(
        b.credits_remaining
        for b in db.execute(select(CreditBatch).where(CreditBatch.account_id == account.id)).scalars()
    )
    assert account.balance >= 0
    assert account.balance == total


class TestDeduction:
    """FIFO deduction across credit batches."""

    def test_single_batch_deduction(self, db_session: Session, account, make_batch):
        batch = make_batch(account, 100)

        result = deduct(db_session, account.id, 30, tool="social_post")

        assert result.success
        assert result.previous_balance == 100
        assert result.remaining_balance == 70
        assert _remaining(db_session, batch) == 70
        assert get_balance(db_session, account.id) == 70

    def test_soonest_expiring_batch_is_drained_first(self, db_session: Session, account, make_batch):
        now = utcnow()
        batch_a = make_batch(account, 5, expires_at=now + timedelta(days=2))
        batch_b = make_batch(account, 10, expires_at=now + timedelta(days=30))

        deduct(db_session, account.id, 7)

        assert _remaining(db_session, batch_a) == 0
        assert _remaining(db_session, batch_b) == 8

    def test_deduction_spanning_two_batches(self, db_session: Session, account, make_batch):
        now = utcnow()
        batch_a = make_batch(account, 5, expires_at=now + timedelta(days=2))
        batch_b = make_batch(account, 10, expires_at=now + timedelta(days=30))

        result = deduct(db_session, account.id, 8)

        assert _remaining(db_session, batch_a) == 0
        assert _remaining(db_session, batch_b) == 7
        assert result.remaining_balance == 7
        _assert_conserved(db_session, account)

    def test_never_expiring_batch_is_used_last(self, db_session: Session, account, make_batch):
        forever = make_batch(account, 10, expires_at=None)
        expiring = make_batch(account, 10, expires_at=utcnow() + timedelta(days=10))

        deduct(db_session, account.id, 4)

        assert _remaining(db_session, expiring) == 6
        assert _remaining(db_session, forever) == 10

    def test_same_expiry_uses_oldest_grant_first(self, db_session: Session, account, make_batch):
        now = utcnow()
        expires = now + timedelta(days=10)
        newer = make_batch(account, 10, expires_at=expires, granted_at=now - timedelta(days=1))
        older = make_batch(account, 10, expires_at=expires, granted_at=now - timedelta(days=5))

        deduct(db_session, account.id, 3)

        assert _remaining(db_session, older) == 7
        assert _remaining(db_session, newer) == 10

    def test_insufficient_credits_leaves_balances_unchanged(self, db_session: Session, account, make_batch):
        batch = make_batch(account, 5)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            deduct(db_session, account.id, 1_000_000)

        assert exc_info.value.available == 5
        assert exc_info.value.required == 1_000_000
        assert _remaining(db_session, batch) == 5
        assert get_balance(db_session, account.id) == 5
        _assert_conserved(db_session, account)

    def test_expired_batch_does_not_fund_deduction(self, db_session: Session, account, make_batch):
        expired = make_batch(account, 50, expires_at=utcnow() - timedelta(days=1))
        live = make_batch(account, 5, expires_at=utcnow() + timedelta(days=5))

        with pytest.raises(InsufficientCreditsError) as exc_info:
            deduct(db_session, account.id, 10)
        assert exc_info.value.available == 5

        deduct(db_session, account.id, 5)
        assert _remaining(db_session, expired) == 50
        assert _remaining(db_session, live) == 0

    def test_cached_balance_is_not_trusted(self, db_session: Session, account):
        account.balance = 50  # drifted cache with no batches behind it
        db_session.commit()

        with pytest.raises(InsufficientCreditsError) as exc_info:
            deduct(db_session, account.id, 10)
        assert exc_info.value.available == 0

    def test_unknown_account(self, db_session: Session):
        with pytest.raises(AccountNotFoundError):
            deduct(db_session, uuid.uuid4(), 1)

    @pytest.mark.parametrize("credits", [0, -3])
    def test_non_positive_request_rejected(self, db_session: Session, account, credits):
        with pytest.raises(ValueError):
            deduct(db_session, account.id, credits)

    def test_balance_invariants_hold_across_a_sequence(self, db_session: Session, account, make_batch):
        make_batch(account, 20, expires_at=utcnow() + timedelta(days=3))
        make_batch(account, 15, expires_at=utcnow() + timedelta(days=9))

        for credits in (6, 10, 25, 4, 1):
            try:
                deduct(db_session, account.id, credits)
            except InsufficientCreditsError:
                pass
            _assert_conserved(db_session, account)

        make_batch(account, 3)
        deduct(db_session, account.id, 17)
        _assert_conserved(db_session, account)
        assert get_balance(db_session, account.id) == 0


class TestDeductionIdempotency:
    """Caller-supplied keys make retried deductions safe."""

    def test_retry_with_same_key_charges_once(self, db_session: Session, account, make_batch):
        make_batch(account, 20)

        first = deduct(db_session, account.id, 5, idempotency_key="req-1")
        second = deduct(db_session, account.id, 5, idempotency_key="req-1")

        assert not first.replayed
        assert second.replayed
        assert second.remaining_balance == first.remaining_balance == 15
        assert get_balance(db_session, account.id) == 15

        records = db_session.execute(
            select(UsageRecord).where(UsageRecord.account_id == account.id)
        ).scalars().all()
        assert len(records) == 1

    def test_different_keys_charge_separately(self, db_session: Session, account, make_batch):
        make_batch(account, 20)

        deduct(db_session, account.id, 5, idempotency_key="req-a")
        deduct(db_session, account.id, 5, idempotency_key="req-b")

        assert get_balance(db_session, account.id) == 10

    def test_failed_attempt_does_not_store_key(self, db_session: Session, account, make_batch):
        make_batch(account, 3)

        with pytest.raises(InsufficientCreditsError):
            deduct(db_session, account.id, 5, idempotency_key="req-x")

        make_batch(account, 10)
        result = deduct(db_session, account.id, 5, idempotency_key="req-x")
        assert not result.replayed
        assert result.remaining_balance == 8


class TestUsageLogging:
    """Usage records are best-effort and never undo a deduction."""

    def test_successful_deduction_is_logged(self, db_session: Session, account, make_batch):
        make_batch(account, 10)

        result = deduct(db_session, account.id, 2, tool="document_qa", description="Asked about onboarding")

        record = db_session.get(UsageRecord, result.usage_record_id)
        assert record is not None
        assert record.tool == "document_qa"
        assert record.credits_used == 2
        assert record.description == "Asked about onboarding"

    def test_logging_failure_keeps_deduction(self, db_session: Session, account, make_batch):
        make_batch(account, 10)
        broken = UsageLogger(session_factory=MagicMock(side_effect=RuntimeError("log store down")))

        result = deduct(db_session, account.id, 4, usage_logger=broken)

        assert result.success
        assert result.usage_record_id is None
        assert broken.failure_count == 1
        assert get_balance(db_session, account.id) == 6

    def test_rejected_deduction_is_not_logged(self, db_session: Session, account):
        with pytest.raises(InsufficientCreditsError):
            deduct(db_session, account.id, 1)

        records = db_session.execute(
            select(UsageRecord).where(UsageRecord.account_id == account.id)
        ).scalars().all()
        assert records == []


class TestConcurrentDeduction:
    """Two writers racing for the last credit."""

    def test_only_one_of_two_concurrent_deductions_succeeds(self, db_session: Session, account, make_batch):
        make_batch(account, 1)
        account_id = account.id
        barrier = threading.Barrier(2)
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker():
            session = SessionLocal()
            try:
                barrier.wait()
                deduct(session, account_id, 1, tool="race")
                outcome = "success"
            except InsufficientCreditsError:
                outcome = "insufficient"
            finally:
                session.close()
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(outcomes) == ["insufficient", "success"]
        assert get_balance(db_session, account_id) == 0
        _assert_conserved(db_session, account)

    def test_many_concurrent_deductions_never_overdraw(self, account, make_batch, db_session: Session):
        make_batch(account, 10)
        account_id = account.id
        successes = []
        lock = threading.Lock()

        def worker():
            session = SessionLocal()
            try:
                deduct(session, account_id, 3)
                with lock:
                    successes.append(1)
            except InsufficientCreditsError:
                pass
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(successes) == 3
        assert get_balance(db_session, account_id) == 1
        _assert_conserved(db_session, account)
