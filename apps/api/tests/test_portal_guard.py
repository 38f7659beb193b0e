from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agencyhub.core.celery_app import run_portal_cleanup
from agencyhub.core.config import get_settings
from agencyhub.core.database import Base
from agencyhub.portal.guard import PortalAuth, PortalAuthType, PortalGuard, normalize_permissions
from agencyhub.portal.models import PortalAccessToken, PortalSession
from agencyhub.portal.repository import TOKEN_TYPE_API, TOKEN_TYPE_MAGIC_LINK, PortalAccessRepository


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture()
def guard(db_session: Session, clock: FixedClock) -> PortalGuard:
    return PortalGuard(db_session, clock=clock)


def _auth(permissions: dict[str, bool] | None = None, client_id: str = "client-1") -> PortalAuth:
    return PortalAuth(type=PortalAuthType.TOKEN, client_id=client_id, email="c@example.com", permissions=permissions or {})


def test_token_authentication_records_last_use(guard: PortalGuard) -> None:
    access = guard.access_tokens.create_access("client-1", "c@example.com")

    auth = guard.authenticate_with_token(access.token)

    assert auth is not None
    assert auth.type is PortalAuthType.TOKEN
    assert auth.client_id == "client-1"
    assert auth.access_id == access.id
    assert guard.can_view_proposals(auth)
    assert guard.access_tokens.get(access.id).last_used_at is not None


def test_api_tokens_authenticate_like_access_tokens(guard: PortalGuard) -> None:
    access = guard.access_tokens.create_access("client-1", "c@example.com", token_type=TOKEN_TYPE_API)

    assert guard.authenticate_with_token(access.token) is not None


def test_token_authentication_rejects_unknown_revoked_and_expired(guard: PortalGuard, clock: FixedClock) -> None:
    revoked = guard.access_tokens.create_access("client-1", "c@example.com")
    expiring = guard.access_tokens.create_access("client-1", "c@example.com", expires_at=clock.now + timedelta(minutes=5))
    assert guard.access_tokens.revoke_access(revoked.id)

    assert guard.authenticate_with_token("") is None
    assert guard.authenticate_with_token("nope") is None
    assert guard.authenticate_with_token(revoked.token) is None
    assert guard.authenticate_with_token(expiring.token) is not None

    clock.advance(minutes=10)
    assert guard.authenticate_with_token(expiring.token) is None


def test_magic_link_is_not_a_bearer_token(guard: PortalGuard) -> None:
    guard.access_tokens.create_access("client-1", "c@example.com")
    link = guard.access_tokens.create_magic_link("client-1", "c@example.com")

    assert link.token_type == TOKEN_TYPE_MAGIC_LINK
    assert guard.authenticate_with_token(link.token) is None


def test_magic_link_succeeds_exactly_once(guard: PortalGuard, db_session: Session) -> None:
    access = guard.access_tokens.create_access("client-1", "c@example.com")
    link = guard.access_tokens.create_magic_link("client-1", "c@example.com")

    first = guard.authenticate_with_magic_link(link.token)
    second = guard.authenticate_with_magic_link(link.token)

    assert first is not None
    assert first.type is PortalAuthType.MAGIC_LINK
    assert first.access_id == access.id
    assert second is None

    stored = db_session.scalar(select(PortalAccessToken).where(PortalAccessToken.token == link.token))
    assert stored is not None
    assert stored.is_active is False


def test_magic_link_without_access_issues_a_new_credential(guard: PortalGuard) -> None:
    link = guard.access_tokens.create_magic_link("client-2", "new@example.com")

    auth = guard.authenticate_with_magic_link(link.token)

    assert auth is not None
    assert auth.client_id == "client-2"
    created = guard.access_tokens.get_by_client_id("client-2")
    assert [item.id for item in created] == [auth.access_id]
    assert auth.as_dict()["permissions"]["view_invoices"] is True


def test_expired_magic_link_is_rejected(guard: PortalGuard, clock: FixedClock) -> None:
    link = guard.access_tokens.create_magic_link("client-1", "c@example.com")

    clock.advance(minutes=get_settings().portal_magic_link_minutes + 1)

    assert guard.authenticate_with_magic_link(link.token) is None


def test_new_magic_link_invalidates_older_ones(guard: PortalGuard) -> None:
    older = guard.access_tokens.create_magic_link("client-1", "c@example.com")
    newer = guard.access_tokens.create_magic_link("client-1", "c@example.com")

    assert guard.authenticate_with_magic_link(older.token) is None
    assert guard.authenticate_with_magic_link(newer.token) is not None


def test_magic_link_redeemed_from_two_sessions_succeeds_once(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'portal.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    with factory() as setup:
        token = PortalAccessRepository(setup).create_magic_link("client-1", "c@example.com").token

    first, second = factory(), factory()
    try:
        # Both redeemers see a usable link before either one marks it used.
        for session in (first, second):
            assert session.scalar(select(PortalAccessToken.is_active).where(PortalAccessToken.token == token)) is True

        results = [PortalAccessRepository(session).consume_magic_link(token) for session in (first, second)]
    finally:
        first.close()
        second.close()
        engine.dispose()

    assert results[0] is not None
    assert results[1] is None


def test_session_lifecycle(guard: PortalGuard) -> None:
    access = guard.access_tokens.create_access("client-1", "c@example.com", permissions={"view_invoices": True})

    portal_session = guard.create_session(access.id, "10.0.0.1", "pytest")
    assert portal_session is not None
    assert portal_session.ip_address == "10.0.0.1"

    auth = guard.authenticate_with_session(portal_session.session_token)
    assert auth is not None
    assert auth.type is PortalAuthType.SESSION
    assert auth.session_id == portal_session.id
    assert guard.can_view_invoices(auth)
    assert not guard.can_view_proposals(auth)

    token = portal_session.session_token
    assert guard.logout(token) is True
    assert guard.logout(token) is False
    assert guard.authenticate_with_session(token) is None


def test_session_expires_and_follows_access_revocation(guard: PortalGuard, clock: FixedClock) -> None:
    access = guard.access_tokens.create_access("client-1", "c@example.com")
    first = guard.create_session(access.id)
    second = guard.create_session(access.id)
    assert first is not None and second is not None

    guard.access_tokens.revoke_access(access.id)
    assert guard.authenticate_with_session(first.session_token) is None

    other = guard.access_tokens.create_access("client-1", "c@example.com")
    third = guard.create_session(other.id)
    assert third is not None
    clock.advance(hours=get_settings().portal_session_hours, seconds=1)
    assert guard.authenticate_with_session(third.session_token) is None


def test_create_session_requires_an_active_bearer_credential(guard: PortalGuard) -> None:
    link = guard.access_tokens.create_magic_link("client-1", "c@example.com")
    revoked = guard.access_tokens.create_access("client-1", "c@example.com")
    guard.access_tokens.revoke_access(revoked.id)

    assert guard.create_session("") is None
    assert guard.create_session("missing-id") is None
    assert guard.create_session(link.id) is None
    assert guard.create_session(revoked.id) is None


def test_session_repository_helpers(guard: PortalGuard, clock: FixedClock) -> None:
    access = guard.access_tokens.create_access("client-1", "c@example.com")
    portal_session = guard.create_session(access.id)
    guard.create_session(access.id)
    assert portal_session is not None

    assert guard.sessions.count_active_sessions() == 2
    assert len(guard.sessions.get_active_by_access_token(access.id)) == 2

    clock.advance(hours=1)
    assert guard.sessions.extend_session(portal_session.session_token)
    assert guard.sessions.terminate_all_for_access_token(access.id) == 2
    assert guard.sessions.count_active_sessions() == 0


def test_permission_checks(guard: PortalGuard) -> None:
    auth = _auth({"view_proposals": True, "make_payments": True})

    assert guard.has_permission(auth, "view_proposals")
    assert guard.can_make_payments(auth)
    assert not guard.can_download_files(auth)
    assert not guard.has_permission(auth, "delete_everything")
    assert guard.permission_summary(auth) == {
        "can_view_invoices": False,
        "can_view_proposals": True,
        "can_view_projects": False,
        "can_make_payments": True,
        "can_download_files": False,
        "can_submit_feedback": False,
    }


def test_can_access_resource_is_scoped_to_the_credential_client(guard: PortalGuard) -> None:
    auth = _auth(client_id="client-1")

    assert guard.can_access_resource(auth, "client-1")
    assert not guard.can_access_resource(auth, "client-2")
    assert not guard.can_access_resource(auth, None)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, {}),
        ({"view_invoices": True, "make_payments": False}, {"view_invoices": True}),
        ({"view_invoices": "yes", "view_proposals": 1}, {}),
        ({"root": True}, {}),
        ('{"submit_feedback": true}', {"submit_feedback": True}),
        ("{not json", {}),
        ([["view_invoices", True]], {}),
    ],
)
def test_normalize_permissions(raw: object, expected: dict[str, bool]) -> None:
    assert normalize_permissions(raw) == expected


def test_auth_as_dict_lists_every_permission() -> None:
    payload = _auth({"view_projects": True}).as_dict()

    assert payload["type"] == "token"
    assert payload["permissions"] == {
        "download_files": False,
        "make_payments": False,
        "submit_feedback": False,
        "view_invoices": False,
        "view_projects": True,
        "view_proposals": False,
    }


def test_permission_updates_apply_to_later_authentications(guard: PortalGuard) -> None:
    access = guard.access_tokens.create_access("client-1", "c@example.com")

    assert guard.access_tokens.update_permissions(access.id, {"view_invoices": True})
    assert not guard.access_tokens.update_permissions("missing", {})

    auth = guard.authenticate_with_token(access.token)
    assert auth is not None
    assert auth.permissions == {"view_invoices": True}


def test_revoke_all_client_access(guard: PortalGuard) -> None:
    guard.access_tokens.create_access("client-1", "a@example.com")
    guard.access_tokens.create_access("client-1", "b@example.com")
    guard.access_tokens.create_access("client-2", "c@example.com")

    assert guard.access_tokens.revoke_all_client_access("client-1") == 2
    assert guard.access_tokens.get_by_client_id("client-1") == []
    assert len(guard.access_tokens.get_by_client_id("client-2")) == 1


def test_portal_cleanup_deactivates_expired_credentials_and_sessions(session_factory: sessionmaker[Session]) -> None:
    past = datetime.now(timezone.utc) - timedelta(days=2)
    with session_factory() as session:
        repository = PortalAccessRepository(session, clock=lambda: past - timedelta(hours=1))
        stale = repository.create_access("client-1", "old@example.com", expires_at=past)
        fresh = repository.create_access("client-1", "new@example.com")
        session.add(PortalSession(access_token_id=fresh.id, session_token="s" * 64, expires_at=past))
        session.commit()
        stale_id = stale.id

    result = run_portal_cleanup(session_factory)

    assert result == {"access_tokens": 1, "sessions": 1}
    with session_factory() as session:
        assert session.get(PortalAccessToken, stale_id).is_active is False
        assert session.scalar(select(PortalSession)) is None
