from __future__ import annotations

from typing import Any

from agencyhub.guards.base import BaseGuard
from agencyhub.platform.security.context import Identity


class PipelineGuard(BaseGuard):
    """Pipelines are agency-internal: client roles get no access even when assigned."""

    def can_view(self, identity: Identity, pipeline: Any) -> bool:
        return self._staff_access(self._identity(identity), self._resource(pipeline))

    def can_create(self, identity: Identity) -> bool:
        return self._is_staff(self._identity(identity))

    def can_edit(self, identity: Identity, pipeline: Any) -> bool:
        return self._staff_access(self._identity(identity), self._resource(pipeline))

    def can_delete(self, identity: Identity, pipeline: Any) -> bool:
        return self.can_edit(identity, pipeline)

    def can_manage_stages(self, identity: Identity, pipeline: Any) -> bool:
        return self.can_edit(identity, pipeline)

    def permission_summary(self, identity: Identity, pipeline: Any = None) -> dict[str, Any]:
        summary: dict[str, Any] = {"can_create": self.can_create(identity)}
        if pipeline is not None:
            summary.update(
                {
                    "can_view": self.can_view(identity, pipeline),
                    "can_edit": self.can_edit(identity, pipeline),
                    "can_delete": self.can_delete(identity, pipeline),
                    "can_manage_stages": self.can_manage_stages(identity, pipeline),
                }
            )
        return summary
