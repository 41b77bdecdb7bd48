from datetime import timedelta

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from credit_ledger.auth import create_access_token
from credit_ledger.config import settings
from credit_ledger.db import utcnow
from credit_ledger.services.ledger import find_account_by_email

from conftest import unique_email


def _auth(account) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(account.id))}"}


class TestAccountsApi:

    def test_signup_then_login(self, client: TestClient, db_session: Session):
        email = unique_email("signup")

        response = client.post("/accounts/signup", json={"email": email})
        assert response.status_code == 200
        body = response.json()
        assert body["email"] == email
        assert body["balance"] == 0
        assert find_account_by_email(db_session, email) is not None

        login = client.post("/accounts/login", json={"email": email})
        assert login.status_code == 200
        token = login.json()["access_token"]

        balance = client.get("/credits/balance", headers={"Authorization": f"Bearer {token}"})
        assert balance.status_code == 200
        assert balance.json() == {"credits": 0}

    def test_login_unknown_email(self, client: TestClient):
        response = client.post("/accounts/login", json={"email": unique_email("ghost")})

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "AuthenticationError"

    def test_login_disabled_unless_enabled(self, client: TestClient, account, monkeypatch):
        monkeypatch.setattr(settings, "allow_email_login", False)

        response = client.post("/accounts/login", json={"email": account.email})

        assert response.status_code == 403
        assert response.json()["detail"] == "Email login is disabled"


class TestCreditsApi:

    def test_requires_token(self, client: TestClient):
        assert client.get("/credits/balance").status_code == 401

    def test_rejects_bad_token(self, client: TestClient):
        response = client.get("/credits/balance", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_deduct_and_balance(self, client: TestClient, account, make_batch):
        make_batch(account, 20)

        response = client.post(
            "/credits/deduct",
            json={"tool": "social_post", "credits": 5, "description": "Weekly post"},
            headers=_auth(account),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["previous_balance"] == 20
        assert body["remaining_balance"] == 15
        assert client.get("/credits/balance", headers=_auth(account)).json() == {"credits": 15}

    def test_insufficient_credits_is_402(self, client: TestClient, account, make_batch):
        make_batch(account, 2)

        response = client.post("/credits/deduct", json={"credits": 10}, headers=_auth(account))

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["error"] == "InsufficientCreditsError"
        assert detail["required_credits"] == 10
        assert detail["available_credits"] == 2

    def test_non_positive_credits_rejected(self, client: TestClient, account):
        response = client.post("/credits/deduct", json={"credits": 0}, headers=_auth(account))
        assert response.status_code == 422

    def test_idempotency_key_replays(self, client: TestClient, account, make_batch):
        make_batch(account, 10)
        headers = {**_auth(account), "Idempotency-Key": "click-1"}

        first = client.post("/credits/deduct", json={"credits": 4}, headers=headers)
        second = client.post("/credits/deduct", json={"credits": 4}, headers=headers)

        assert first.json()["replayed"] is False
        assert second.json()["replayed"] is True
        assert second.json()["remaining_balance"] == 6
        assert client.get("/credits/balance", headers=_auth(account)).json() == {"credits": 6}

    def test_expiration_without_credits_is_empty(self, client: TestClient, account):
        response = client.get("/credits/expiration", headers=_auth(account))
        assert response.status_code == 204

    def test_expiration_warning(self, client: TestClient, account, make_batch):
        make_batch(account, 10, expires_at=utcnow() + timedelta(days=3))

        response = client.get("/credits/expiration", headers=_auth(account))

        assert response.status_code == 200
        body = response.json()
        assert body["is_expiring_soon"] is True
        assert body["is_expired"] is False
        assert body["days_until_expiry"] == 3

    def test_usage_summary(self, client: TestClient, account, make_batch):
        make_batch(account, 10)
        client.post("/credits/deduct", json={"tool": "blog_writer", "credits": 3}, headers=_auth(account))
        client.post("/credits/deduct", json={"tool": "document_qa", "credits": 2}, headers=_auth(account))

        response = client.get("/credits/usage", headers=_auth(account))

        assert response.status_code == 200
        body = response.json()
        assert body["used_this_month"] == 5
        assert {r["tool"] for r in body["records"]} == {"blog_writer", "document_qa"}

    def test_deleted_account_token_is_404(self, client: TestClient, db_session: Session):
        from credit_ledger.services.accounts import create_account, delete_account

        account = create_account(db_session, unique_email("gone"))
        headers = _auth(account)
        delete_account(db_session, account.id)

        response = client.get("/credits/balance", headers=headers)
        assert response.status_code == 404


class TestObservability:

    def test_healthz(self, client: TestClient):
        assert client.get("/healthz").json() == {"status": "ok"}

    def test_readyz(self, client: TestClient):
        response = client.get("/ops/readyz")
        assert response.status_code == 200
        assert response.json()["checks"]["database"]["status"] == "healthy"

    def test_metrics(self, client: TestClient):
        response = client.get("/ops/metrics")
        assert response.status_code == 200
        assert "credit_ledger_accounts_total" in response.text
        assert "credit_ledger_usage_log_failures_total" in response.text

    def test_request_id_is_echoed(self, client: TestClient):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
