from __future__ import annotations

from typing import Any

from agencyhub.guards.base import BaseGuard
from agencyhub.platform.security.context import CLIENT_ROLES, Identity


class DealGuard(BaseGuard):
    def can_view(self, identity: Identity, deal: Any) -> bool:
        identity = self._identity(identity)
        resource = self._resource(deal)
        return self._scoped_access(identity, resource, client_roles=CLIENT_ROLES, client_id=resource.client_id)

    def can_create(self, identity: Identity) -> bool:
        return self._is_staff(self._identity(identity))

    def can_edit(self, identity: Identity, deal: Any) -> bool:
        return self._staff_access(self._identity(identity), self._resource(deal))

    def can_delete(self, identity: Identity, deal: Any) -> bool:
        return self.can_edit(identity, deal)

    def can_move_stage(self, identity: Identity, deal: Any) -> bool:
        return self.can_edit(identity, deal)

    def can_close_deal(self, identity: Identity, deal: Any) -> bool:
        return self.can_edit(identity, deal)

    def can_convert_to_project(self, identity: Identity, deal: Any) -> bool:
        return self.can_edit(identity, deal)

    def permission_summary(self, identity: Identity, deal: Any = None) -> dict[str, Any]:
        summary: dict[str, Any] = {"can_create": self.can_create(identity)}
        if deal is not None:
            summary.update(
                {
                    "can_view": self.can_view(identity, deal),
                    "can_edit": self.can_edit(identity, deal),
                    "can_delete": self.can_delete(identity, deal),
                    "can_move_stage": self.can_move_stage(identity, deal),
                    "can_close_deal": self.can_close_deal(identity, deal),
                    "can_convert_to_project": self.can_convert_to_project(identity, deal),
                }
            )
        return summary
