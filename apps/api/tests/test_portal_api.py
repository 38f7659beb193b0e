from __future__ import annotations

from collections.abc import Generator
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agencyhub.core.config import get_settings
from agencyhub.core.database import Base, get_db
from agencyhub.crm.models import Agency, Client, Proposal
from agencyhub.main import app
from agencyhub.portal import api as portal_api
from agencyhub.portal.delivery import set_magic_link_delivery
from agencyhub.portal.models import PortalAccessToken, PortalActivityLog
from agencyhub.portal.repository import TOKEN_TYPE_MAGIC_LINK, PortalAccessRepository, PortalActivityRepository


CLIENT_EMAIL = "billing@acme-client.com"


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
        session.add(Agency(id="agency-a", name="Agency A"))
        session.add_all(
            [
                Client(id="client-1", agency_id="agency-a", name="Acme", email=CLIENT_EMAIL),
                Client(id="client-2", agency_id="agency-a", name="Globex"),
            ]
        )
        session.add_all(
            [
                Proposal(id="p-draft", agency_id="agency-a", client_id="client-1", title="Draft", status="draft"),
                Proposal(id="p-sent", agency_id="agency-a", client_id="client-1", title="Sent", status="sent"),
                Proposal(id="p-accepted", agency_id="agency-a", client_id="client-1", title="Done", status="accepted"),
                Proposal(id="p-other", agency_id="agency-a", client_id="client-2", title="Other", status="sent"),
            ]
        )
        session.commit()
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


class RecordingDelivery:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def deliver(self, email: str, link_url: str) -> None:
        self.sent.append((email, link_url))


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def delivery() -> Generator[RecordingDelivery, None, None]:
    recorder = RecordingDelivery()
    set_magic_link_delivery(recorder)
    yield recorder
    set_magic_link_delivery(None)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def access(db_session: Session) -> PortalAccessToken:
    return PortalAccessRepository(db_session).create_access("client-1", CLIENT_EMAIL)


def _activity(db_session: Session) -> list[str]:
    return [entry.action for entry in db_session.scalars(select(PortalActivityLog).order_by(PortalActivityLog.created_at))]


def test_token_login_opens_a_session(client: TestClient, access: PortalAccessToken, db_session: Session) -> None:
    response = client.post("/portal/auth/token", json={"token": access.token}, headers={"User-Agent": "portal-test"})

    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "token"
    assert body["client_id"] == "client-1"
    assert body["permissions"]["view_proposals"] is True
    assert len(body["session_token"]) == 64
    assert _activity(db_session) == ["login"]

    me = client.get("/portal/me", headers={"X-Portal-Session": body["session_token"]})
    assert me.status_code == 200
    assert me.json()["client"] == {"id": "client-1", "name": "Acme", "email": CLIENT_EMAIL}
    assert me.json()["permissions"]["can_make_payments"] is True


def test_invalid_token_login_is_rejected(client: TestClient) -> None:
    response = client.post("/portal/auth/token", json={"token": "0" * 64})

    assert response.status_code == 401
    assert response.json()["code"] == "PORTAL_UNAUTHENTICATED"


def test_portal_requests_need_a_credential(client: TestClient) -> None:
    assert client.get("/portal/me").status_code == 401
    assert client.get("/portal/me", headers={"X-Portal-Session": "bogus"}).status_code == 401


def test_magic_link_login_is_single_use(client: TestClient, access: PortalAccessToken, db_session: Session) -> None:
    link = PortalAccessRepository(db_session).create_magic_link("client-1", CLIENT_EMAIL)

    first = client.post("/portal/auth/magic-link", json={"token": link.token})
    second = client.post("/portal/auth/magic-link", json={"token": link.token})

    assert first.status_code == 200
    assert first.json()["type"] == "magic_link"
    assert second.status_code == 401


def test_magic_link_cannot_be_used_as_bearer_token(client: TestClient, access: PortalAccessToken, db_session: Session) -> None:
    link = PortalAccessRepository(db_session).create_magic_link("client-1", CLIENT_EMAIL)

    assert client.post("/portal/auth/token", json={"token": link.token}).status_code == 401
    assert client.get("/portal/me", headers={"X-Portal-Token": link.token}).status_code == 401


def test_request_link_does_not_reveal_accounts(
    client: TestClient,
    access: PortalAccessToken,
    db_session: Session,
    delivery: RecordingDelivery,
) -> None:
    known = client.post("/portal/auth/request-link", json={"email": CLIENT_EMAIL})
    unknown = client.post("/portal/auth/request-link", json={"email": "nobody@acme-client.com"})

    assert known.status_code == 200
    assert known.json() == unknown.json()

    links = list(db_session.scalars(select(PortalAccessToken).where(PortalAccessToken.token_type == TOKEN_TYPE_MAGIC_LINK)))
    assert [link.email for link in links] == [CLIENT_EMAIL]
    assert delivery.sent == [(CLIENT_EMAIL, f"http://localhost:3000/portal/login?token={links[0].token}")]


def test_delivered_magic_link_signs_the_client_in(client: TestClient, access: PortalAccessToken, delivery: RecordingDelivery) -> None:
    client.post("/portal/auth/request-link", json={"email": CLIENT_EMAIL})

    [(_, link_url)] = delivery.sent
    token = parse_qs(urlsplit(link_url).query)["token"][0]
    response = client.post("/portal/auth/magic-link", json={"token": token})

    assert response.status_code == 200
    assert response.json()["client_id"] == "client-1"


def test_viewing_a_sent_proposal_marks_it_viewed(client: TestClient, access: PortalAccessToken, db_session: Session) -> None:
    response = client.get("/portal/proposals/p-sent", headers={"X-Portal-Token": access.token})

    assert response.status_code == 200
    assert response.json()["status"] == "viewed"
    assert _activity(db_session) == ["view_proposal"]


def test_authenticated_portal_requests_scope_the_database_session_to_the_client(
    client: TestClient,
    access: PortalAccessToken,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    scoped: list[tuple[Session, str | None]] = []
    monkeypatch.setattr(
        portal_api,
        "apply_portal_rls_session_variables",
        lambda session, client_id: scoped.append((session, client_id)),
    )

    assert client.get("/portal/proposals/p-sent", headers={"X-Portal-Token": access.token}).status_code == 200
    assert client.get("/portal/me", headers={"X-Portal-Token": access.token}).status_code == 200
    assert client.get("/portal/me", headers={"X-Portal-Token": "0" * 64}).status_code == 401

    assert scoped == [(db_session, "client-1"), (db_session, "client-1")]


@pytest.mark.parametrize("proposal_id", ["p-draft", "p-other", "missing"])
def test_hidden_proposals_look_missing(client: TestClient, access: PortalAccessToken, proposal_id: str) -> None:
    response = client.get(f"/portal/proposals/{proposal_id}", headers={"X-Portal-Token": access.token})

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_proposals_require_view_permission(client: TestClient, db_session: Session) -> None:
    restricted = PortalAccessRepository(db_session).create_access("client-1", CLIENT_EMAIL, permissions={"view_invoices": True})

    response = client.get("/portal/proposals/p-sent", headers={"X-Portal-Token": restricted.token})

    assert response.status_code == 403


def test_accepting_a_proposal(client: TestClient, access: PortalAccessToken, db_session: Session) -> None:
    headers = {"X-Portal-Token": access.token}

    accepted = client.post("/portal/proposals/p-sent/respond", json={"decision": "accepted", "name": "Ada"}, headers=headers)
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert accepted.json()["responded_at"] is not None

    entry = db_session.scalar(select(PortalActivityLog).where(PortalActivityLog.action == "accept_proposal"))
    assert entry is not None
    assert entry.details == {"signed_name": "Ada"}

    again = client.post("/portal/proposals/p-sent/respond", json={"decision": "rejected"}, headers=headers)
    assert again.status_code == 400
    assert again.json()["message"] == "This proposal cannot be rejected."


def test_closed_proposal_cannot_be_accepted(client: TestClient, access: PortalAccessToken) -> None:
    response = client.post(
        "/portal/proposals/p-accepted/respond",
        json={"decision": "accepted"},
        headers={"X-Portal-Token": access.token},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "This proposal cannot be accepted."


def test_invalid_decision_is_a_validation_error(client: TestClient, access: PortalAccessToken) -> None:
    response = client.post(
        "/portal/proposals/p-sent/respond",
        json={"decision": "maybe"},
        headers={"X-Portal-Token": access.token},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_FAILED"


def test_logout_ends_the_session(client: TestClient, access: PortalAccessToken, db_session: Session) -> None:
    session_token = client.post("/portal/auth/token", json={"token": access.token}).json()["session_token"]
    headers = {"X-Portal-Session": session_token}

    assert client.post("/portal/logout", headers=headers).json() == {"terminated": True}
    assert client.post("/portal/logout", headers=headers).json() == {"terminated": False}
    assert client.get("/portal/me", headers=headers).status_code == 401
    assert _activity(db_session) == ["login", "logout"]


def test_activity_log_lists_latest_first(client: TestClient, access: PortalAccessToken, db_session: Session) -> None:
    headers = {"X-Portal-Token": access.token}
    client.get("/portal/proposals/p-sent", headers=headers)
    client.post("/portal/proposals/p-sent/respond", json={"decision": "rejected", "reason": "Too expensive"}, headers=headers)

    entries = PortalActivityRepository(db_session).list_for_client("client-1")

    assert [entry.action for entry in entries] == ["reject_proposal", "view_proposal"]
    assert entries[0].details == {"reason": "Too expensive"}
    assert PortalActivityRepository(db_session).list_for_client("client-2") == []
