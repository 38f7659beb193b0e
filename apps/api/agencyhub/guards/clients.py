from __future__ import annotations

from typing import Any

from agencyhub.guards.base import BaseGuard
from agencyhub.platform.security.context import CLIENT_ROLES, Identity, Role


class ClientGuard(BaseGuard):
    """Client records.

    Owner: everything. Agency: view/edit/manage users inside its agency, never delete.
    Direct and end clients: view the client records they are actively assigned to.
    """

    def can_view(self, identity: Identity, client: Any) -> bool:
        identity = self._identity(identity)
        resource = self._resource(client)
        return self._scoped_access(identity, resource, client_roles=CLIENT_ROLES, client_id=resource.id)

    def can_create(self, identity: Identity) -> bool:
        return self._is_staff(self._identity(identity))

    def can_edit(self, identity: Identity, client: Any) -> bool:
        return self._staff_access(self._identity(identity), self._resource(client))

    def can_delete(self, identity: Identity, client: Any) -> bool:
        self._resource(client)
        return self._identity(identity).role is Role.OWNER

    def can_manage_users(self, identity: Identity, client: Any) -> bool:
        return self.can_edit(identity, client)

    def get_assigned_users(self, client_id: str) -> list[dict[str, Any]]:
        return self.assignments.get_assigned_users(client_id)

    def permission_summary(self, identity: Identity, client: Any = None) -> dict[str, Any]:
        identity = self._identity(identity)
        summary: dict[str, Any] = {"can_create": self.can_create(identity)}
        if client is None:
            return summary

        resource = self._resource(client)
        summary.update(
            {
                "can_view": self.can_view(identity, resource),
                "can_edit": self.can_edit(identity, resource),
                "can_delete": self.can_delete(identity, resource),
                "can_manage_users": self.can_manage_users(identity, resource),
                "is_assigned_user": self._is_assigned(identity, resource.id) if identity.role in CLIENT_ROLES else None,
            }
        )
        return summary
