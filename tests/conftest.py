import os
import tempfile
import uuid
from datetime import datetime
from typing import Optional

# Settings are read at import time, so the test database must be chosen first
_db_dir = tempfile.mkdtemp(prefix="credit_ledger_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'ledger.db')}"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["JWT_SECRET"] = "test-secret-test-secret-test-secret-0123"
os.environ["STORAGE_RETRY_BACKOFF_SECONDS"] = "0"
os.environ["ALLOW_EMAIL_LOGIN"] = "true"
os.environ["ADMIN_API_KEY"] = "test-admin-key"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from credit_ledger.db import Base, engine, SessionLocal, utcnow
from credit_ledger.main import app
from credit_ledger.models import Account, CreditBatch
from credit_ledger.services.accounts import create_account
from credit_ledger.services.ledger import active_batches, sync_balance


@pytest.fixture(scope="session", autouse=True)
def create_test_schema():
    # Ensure tables exist for tests
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session() -> Session:
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}@example.com"


@pytest.fixture
def account(db_session: Session) -> Account:
    return create_account(db_session, unique_email())


@pytest.fixture
def make_batch(db_session: Session):
    """Insert a batch directly, bypassing the reconciler."""

    def _make(
        account: Account,
        remaining: int,
        expires_at: Optional[datetime] = None,
        granted: Optional[int] = None,
        granted_at: Optional[datetime] = None,
    ) -> CreditBatch:
        batch = CreditBatch(
            account_id=account.id,
            credits_granted=granted or remaining,
            credits_remaining=remaining,
            plan_name="Test",
            granted_at=granted_at or utcnow(),
            expires_at=expires_at,
            source_event_id=f"evt_test_{uuid.uuid4().hex}",
        )
        db_session.add(batch)
        db_session.flush()
        sync_balance(account, active_batches(db_session, account.id))
        db_session.commit()
        return batch

    return _make
