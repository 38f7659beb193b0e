from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    OWNER = "owner"
    AGENCY = "agency"
    DIRECT_CLIENT = "direct_client"
    END_CLIENT = "end_client"

    @classmethod
    def parse(cls, value: Any) -> Role | None:
        if isinstance(value, Role):
            return value
        if not isinstance(value, str) or not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


CLIENT_ROLES = frozenset({Role.DIRECT_CLIENT, Role.END_CLIENT})
STAFF_ROLES = frozenset({Role.OWNER, Role.AGENCY})
AGENCY_BOUND_ROLES = frozenset({Role.AGENCY, Role.DIRECT_CLIENT})


@dataclass(slots=True, frozen=True)
class Identity:
    """Authenticated staff or client principal as resolved by the authentication layer.

    ``role_name`` keeps the raw claim so that unrecognized roles can be reported;
    ``role`` is ``None`` for anything outside :class:`Role`, which every guard denies.
    """

    id: str
    role_name: str | None
    agency_id: str | None = None
    email: str | None = None

    @property
    def role(self) -> Role | None:
        return Role.parse(self.role_name)

    @property
    def is_owner(self) -> bool:
        return self.role is Role.OWNER

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> Identity:
        agency_id = claims.get("agency_id")
        email = claims.get("email")
        role = claims.get("role")
        return cls(
            id=str(claims.get("sub") or claims.get("id") or ""),
            role_name=str(role) if role else None,
            agency_id=str(agency_id) if agency_id else None,
            email=str(email) if email else None,
        )

    def as_log_fields(self) -> dict[str, str | None]:
        return {"user_id": self.id, "user_role": self.role_name, "agency_id": self.agency_id}
