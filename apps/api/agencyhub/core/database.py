from __future__ import annotations

from collections.abc import Generator

from fastapi import Request
from sqlalchemy import Connection, create_engine, event, text
from sqlalchemy.orm import DeclarativeBase, Session, SessionTransaction, sessionmaker

from agencyhub.core.config import get_settings
from agencyhub.platform.security.context import Identity


class Base(DeclarativeBase):
    pass


engine = create_engine(get_settings().database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

RLS_SESSION_VARIABLES = {
    "user_id": "app.current_user_id",
    "role": "app.current_user_role",
    "agency_id": "app.current_agency_id",
    "client_id": "app.current_client_id",
}


def rls_settings_for(identity: Identity | None) -> dict[str, str]:
    if identity is None:
        return {}

    values = {
        RLS_SESSION_VARIABLES["user_id"]: str(identity.id),
        RLS_SESSION_VARIABLES["role"]: identity.role_name or "",
    }
    if identity.agency_id:
        values[RLS_SESSION_VARIABLES["agency_id"]] = str(identity.agency_id)
    return values


def apply_rls_session_variables(session: Session, identity: Identity | None) -> None:
    """Bind the caller's identity to every transaction the session opens so that
    PostgreSQL row-level security policies filter rows alongside the guards.

    ``set_config(..., true)`` is transaction-local, so the values are re-applied
    on each ``after_begin``; pooled connections never carry a previous caller.
    """

    _bind_rls_variables(session, rls_settings_for(identity))


def apply_portal_rls_session_variables(session: Session, client_id: str | None) -> None:
    """Scope a portal request's session to the single client its credential belongs to.

    Portal authentication runs on the same session before the client is known, so
    an already open transaction receives the variable immediately as well.
    """

    if not client_id:
        return
    values = {RLS_SESSION_VARIABLES["client_id"]: str(client_id)}
    if _bind_rls_variables(session, values) and session.in_transaction():
        _set_variables(session.connection(), values)


def _set_variables(connection: Connection, values: dict[str, str]) -> None:
    for name, value in values.items():
        connection.execute(text("SELECT set_config(:name, :value, true)"), {"name": name, "value": value})


def _bind_rls_variables(session: Session, values: dict[str, str]) -> bool:
    if not values:
        return False
    if session.get_bind().dialect.name != "postgresql":
        return False

    @event.listens_for(session, "after_begin")
    def _set_rls_variables(_session: Session, _transaction: SessionTransaction, connection: Connection) -> None:
        _set_variables(connection, values)

    return True


def get_db(request: Request) -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        apply_rls_session_variables(session, getattr(request.state, "identity", None))
        yield session
    finally:
        session.close()
