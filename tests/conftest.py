import pathlib
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from caportal.main import create_app
from caportal.store import store

INTERNAL_HEADERS = {"x-internal-debug": "true"}


def _issue_token(*, secret: str, account_id: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": account_id,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    """Signs a bearer token for the account named in ``as_account`` (platform admin by default)."""

    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, *, as_account: str = "acc_platform", **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                token = _issue_token(secret=self._jwt_secret, account_id=as_account)
                headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", "jwt_test_secret")
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    store.reset()
    yield


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret="jwt_test_secret")


def seed_portal(target) -> SimpleNamespace:
    """Two organizations, their admins and members, and two practitioners (one invited to acme)."""
    target.create_account({"account_id": "acc_platform", "email": "root@portal.test", "role": "PLATFORM_ADMIN"})
    target.create_account(
        {"account_id": "acc_rep", "email": "rep@acme.test", "role": "ORG_ADMIN", "primary_org": "org_acme"}
    )
    target.create_account(
        {"account_id": "acc_admin", "email": "admin@acme.test", "role": "ORG_ADMIN", "primary_org": "org_acme"}
    )
    target.create_account(
        {"account_id": "acc_member", "email": "member@acme.test", "role": "ORG_MEMBER", "primary_org": "org_acme"}
    )
    target.create_account(
        {"account_id": "acc_beta_rep", "email": "rep@beta.test", "role": "ORG_ADMIN", "primary_org": "org_beta"}
    )
    target.create_account({"account_id": "acc_ca", "email": "ca@firm.test", "role": "PRACTITIONER"})
    target.create_account({"account_id": "acc_ca_other", "email": "other@firm.test", "role": "PRACTITIONER"})
    target.create_organization(
        {
            "org_id": "org_acme",
            "name": "Acme Industries",
            "representative": "acc_rep",
            "admins": ["acc_admin"],
            "created_by": "acc_platform",
        }
    )
    target.create_organization(
        {"org_id": "org_beta", "name": "Beta Traders", "representative": "acc_beta_rep", "created_by": "acc_platform"}
    )
    target.invite_practitioner(org_id="org_acme", practitioner_id="acc_ca", invited_by="acc_rep")
    return SimpleNamespace(
        platform="acc_platform",
        rep="acc_rep",
        admin="acc_admin",
        member="acc_member",
        beta_rep="acc_beta_rep",
        ca="acc_ca",
        ca_other="acc_ca_other",
        acme="org_acme",
        beta="org_beta",
    )


@pytest.fixture
def portal() -> SimpleNamespace:
    return seed_portal(store)


def metric(value, **extra) -> dict:
    return {"value": value, **extra}


def analysis_message(
    analysis_id: str,
    *,
    org_id: str | None = "org_acme",
    metrics: dict | None = None,
    status: str | None = None,
    document_ids: list[str] | None = None,
    **extra,
) -> dict:
    analysis_data: dict = {"calculated_metrics": metrics or {}}
    if status is not None:
        analysis_data["financial_health_analysis"] = {
            "liquidity_assessment": {"status": status},
            "confidence_score": 0.9,
        }
    message: dict = {
        "job_id": f"job_{analysis_id}",
        "analysis_id": analysis_id,
        "company_id": org_id,
        "company_name": "Acme Industries",
        "analysis_data": analysis_data,
        "metadata": {"document_count": len(document_ids or []), "total_pages_processed": 12},
    }
    if document_ids is not None:
        message["document_ids"] = document_ids
    message.update(extra)
    return message
