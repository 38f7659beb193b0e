from __future__ import annotations

import json
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agencyhub.core.auth import create_access_token
from agencyhub.core.config import get_settings
from agencyhub.core.database import Base, get_db
from agencyhub.main import app
from agencyhub.platform.security.context import Identity


OWNER = Identity(id="owner-1", role_name="owner", email="owner@example.com")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_settings(tmp_path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("SECURITY_LOG_DIR", str(tmp_path))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(OWNER)}"}


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/clients/missing", headers=_auth_headers())
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert response.headers.get("x-request-id") == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/clients/missing", headers={**_auth_headers(), "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_authentication_failure_envelope_includes_correlation_id(client: TestClient) -> None:
    response = client.get("/clients/missing", headers={"X-Correlation-Id": "corr-auth-1"})
    assert response.status_code == 401
    assert response.json()["correlation_id"] == "corr-auth-1"
    assert response.headers.get("x-correlation-id") == "corr-auth-1"


def test_rbac_denial_envelope_includes_correlation_id(client: TestClient) -> None:
    end_client = Identity(id="end-1", role_name="end_client", agency_id="agency-a")
    response = client.get(
        "/payments",
        headers={"Authorization": f"Bearer {create_access_token(end_client)}", "X-Correlation-Id": "corr-rbac-1"},
    )
    assert response.status_code == 403
    assert response.json()["correlation_id"] == "corr-rbac-1"


def test_validation_error_envelope_includes_correlation_id(client: TestClient) -> None:
    response = client.post("/portal/auth/token", json={}, headers={"X-Correlation-Id": "corr-422"})
    assert response.status_code == 422
    payload = response.json()
    assert payload["code"] == "VALIDATION_FAILED"
    assert payload["correlation_id"] == "corr-422"


@pytest.mark.parametrize("supplied", ["has spaces", "<script>", "x" * 129])
def test_unusable_correlation_id_is_replaced(client: TestClient, supplied: str) -> None:
    response = client.get("/clients/missing", headers={**_auth_headers(), "X-Correlation-Id": supplied})
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value and header_value != supplied
    assert response.json()["correlation_id"] == header_value


def test_security_log_entries_carry_correlation_id(client: TestClient, tmp_path) -> None:  # type: ignore[no-untyped-def]
    end_client = Identity(id="end-1", role_name="end_client", agency_id="agency-a")
    response = client.get(
        "/invoices/42",
        headers={"Authorization": f"Bearer {create_access_token(end_client)}", "X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 403

    entries = [json.loads(line) for path in tmp_path.glob("security-*.log") for line in path.read_text(encoding="utf-8").splitlines()]
    assert [entry["correlation_id"] for entry in entries] == ["corr-audit-1"]
