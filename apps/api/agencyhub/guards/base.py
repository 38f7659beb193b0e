from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields
from typing import Any, Protocol

from pydantic import BaseModel

from agencyhub.platform.security.assignments import ClientAssignmentLookup, get_assignment_lookup
from agencyhub.platform.security.context import Identity, Role
from agencyhub.platform.security.errors import GuardInputError


@dataclass(slots=True, frozen=True)
class GuardResource:
    """Normalized view of any guarded record.

    Guards only ever read these attributes; absent values are ``None`` and lead to a
    denial rather than an error.
    """

    id: str | None = None
    agency_id: str | None = None
    client_id: str | None = None
    user_id: str | None = None
    status: str | None = None
    converted_to_invoice_id: str | None = None


_RESOURCE_FIELDS = tuple(item.name for item in fields(GuardResource))


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_resource(resource: Any, *, guard: str = "guard") -> GuardResource:
    """Coerce a mapping, pydantic model or ORM row into a :class:`GuardResource`."""

    if isinstance(resource, GuardResource):
        return resource
    if resource is None:
        raise GuardInputError(guard, "resource is missing")

    if isinstance(resource, BaseModel):
        source: Mapping[str, Any] = resource.model_dump()
    elif isinstance(resource, Mapping):
        source = resource
    elif isinstance(resource, (str, bytes, int, float, bool, Iterable)):
        raise GuardInputError(guard, f"unsupported resource type {type(resource).__name__}")
    else:
        source = {name: getattr(resource, name, None) for name in _RESOURCE_FIELDS}

    return GuardResource(**{name: _clean(source.get(name)) for name in _RESOURCE_FIELDS})


def normalize_identity(identity: Any, *, guard: str = "guard") -> Identity:
    if isinstance(identity, Identity):
        return identity
    if isinstance(identity, Mapping):
        return Identity.from_claims(dict(identity))
    raise GuardInputError(guard, "identity is missing")


class AuthorizationGuard(Protocol):
    """Resource-level authorization contract shared by every guard."""

    def can_view(self, identity: Identity, resource: Any) -> bool:
        ...

    def can_create(self, identity: Identity) -> bool:
        ...

    def can_edit(self, identity: Identity, resource: Any) -> bool:
        ...

    def can_delete(self, identity: Identity, resource: Any) -> bool:
        ...


class BaseGuard:
    """Shared decision helpers; concrete guards encode their own role matrix on top."""

    def __init__(self, assignments: ClientAssignmentLookup | None = None) -> None:
        self._assignments = assignments

    @property
    def assignments(self) -> ClientAssignmentLookup:
        if self._assignments is not None:
            return self._assignments
        return get_assignment_lookup()

    def _resource(self, resource: Any) -> GuardResource:
        return normalize_resource(resource, guard=type(self).__name__)

    def _identity(self, identity: Any) -> Identity:
        return normalize_identity(identity, guard=type(self).__name__)

    @staticmethod
    def _belongs_to_agency(identity: Identity, resource: GuardResource) -> bool:
        if identity.agency_id is None or resource.agency_id is None:
            return False
        return resource.agency_id == identity.agency_id

    def _is_assigned(self, identity: Identity, client_id: str | None) -> bool:
        if not identity.id or client_id is None:
            return False
        return self.assignments.is_user_assigned_to_client(identity.id, client_id)

    def _staff_access(self, identity: Identity, resource: GuardResource) -> bool:
        """Owner everywhere, agency inside its own tenant, nobody else."""

        role = identity.role
        if role is Role.OWNER:
            return True
        if role is Role.AGENCY:
            return self._belongs_to_agency(identity, resource)
        return False

    def _scoped_access(
        self,
        identity: Identity,
        resource: GuardResource,
        *,
        client_roles: frozenset[Role],
        client_id: str | None,
    ) -> bool:
        role = identity.role
        if role in (Role.OWNER, Role.AGENCY):
            return self._staff_access(identity, resource)
        if role is not None and role in client_roles:
            return self._is_assigned(identity, client_id)
        return False

    @staticmethod
    def _is_staff(identity: Identity) -> bool:
        return identity.role in (Role.OWNER, Role.AGENCY)
