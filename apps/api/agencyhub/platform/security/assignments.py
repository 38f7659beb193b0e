from __future__ import annotations

from collections.abc import Iterable
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import and_, select
from sqlalchemy.orm import Session, sessionmaker

from agencyhub.core.database import SessionLocal
from agencyhub.crm.models import ClientUser, User


class ClientAssignmentLookup(Protocol):
    """Read-only view over the client_users junction used by client-linked guards."""

    def is_user_assigned_to_client(self, user_id: str, client_id: str) -> bool:
        ...

    def get_assigned_users(self, client_id: str) -> list[dict[str, Any]]:
        ...


class DbClientAssignmentLookup:
    """Assignment lookup backed by the ``client_users`` table (active rows only)."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def is_user_assigned_to_client(self, user_id: str, client_id: str) -> bool:
        if not user_id or not client_id:
            return False

        with self._session_factory() as session:
            match = session.scalar(
                select(ClientUser.id)
                .where(
                    and_(
                        ClientUser.user_id == str(user_id),
                        ClientUser.client_id == str(client_id),
                        ClientUser.is_active.is_(True),
                    )
                )
                .limit(1)
            )
        return match is not None

    def get_assigned_users(self, client_id: str) -> list[dict[str, Any]]:
        with self._session_factory() as session:
            rows = session.execute(
                select(ClientUser.user_id, ClientUser.is_active, User.name, User.email, User.role)
                .join(User, User.id == ClientUser.user_id)
                .where(ClientUser.client_id == str(client_id))
                .order_by(User.email.asc())
            ).all()

        return [
            {
                "user_id": row.user_id,
                "is_active": bool(row.is_active),
                "name": row.name,
                "email": row.email,
                "role": row.role,
            }
            for row in rows
        ]


class InMemoryClientAssignmentLookup:
    """Assignment lookup over a fixed set of ``(user_id, client_id)`` pairs."""

    def __init__(self, assignments: Iterable[tuple[str, str]] = ()) -> None:
        self._assignments = {(str(user_id), str(client_id)) for user_id, client_id in assignments}

    def assign(self, user_id: str, client_id: str) -> None:
        self._assignments.add((str(user_id), str(client_id)))

    def revoke(self, user_id: str, client_id: str) -> None:
        self._assignments.discard((str(user_id), str(client_id)))

    def is_user_assigned_to_client(self, user_id: str, client_id: str) -> bool:
        return (str(user_id), str(client_id)) in self._assignments

    def get_assigned_users(self, client_id: str) -> list[dict[str, Any]]:
        return [
            {"user_id": user_id, "is_active": True, "name": None, "email": None, "role": None}
            for user_id, assigned_client_id in sorted(self._assignments)
            if assigned_client_id == str(client_id)
        ]


_ASSIGNMENT_LOOKUP: ClientAssignmentLookup | None = None
_ASSIGNMENT_LOCK = Lock()


def get_assignment_lookup() -> ClientAssignmentLookup:
    """Get the active assignment lookup, defaulting to the database-backed one."""

    global _ASSIGNMENT_LOOKUP
    with _ASSIGNMENT_LOCK:
        if _ASSIGNMENT_LOOKUP is None:
            _ASSIGNMENT_LOOKUP = DbClientAssignmentLookup()
        return _ASSIGNMENT_LOOKUP


def set_assignment_lookup(lookup: ClientAssignmentLookup | None) -> None:
    """Set the active assignment lookup; ``None`` restores the database default."""

    global _ASSIGNMENT_LOOKUP
    with _ASSIGNMENT_LOCK:
        _ASSIGNMENT_LOOKUP = lookup
