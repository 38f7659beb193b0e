from __future__ import annotations

from enum import StrEnum
from types import MappingProxyType
from typing import Any

from agencyhub.guards.base import BaseGuard
from agencyhub.platform.security.context import CLIENT_ROLES, Identity


class ProposalStatus(StrEnum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


PROPOSAL_TRANSITIONS: MappingProxyType[str, tuple[str, ...]] = MappingProxyType(
    {
        ProposalStatus.DRAFT: (ProposalStatus.SENT,),
        ProposalStatus.SENT: (
            ProposalStatus.VIEWED,
            ProposalStatus.ACCEPTED,
            ProposalStatus.REJECTED,
            ProposalStatus.EXPIRED,
        ),
        ProposalStatus.VIEWED: (ProposalStatus.ACCEPTED, ProposalStatus.REJECTED, ProposalStatus.EXPIRED),
        ProposalStatus.ACCEPTED: (),
        ProposalStatus.REJECTED: (ProposalStatus.DRAFT,),
        ProposalStatus.EXPIRED: (ProposalStatus.DRAFT,),
    }
)

EDITABLE_STATUSES = frozenset({ProposalStatus.DRAFT, ProposalStatus.REJECTED, ProposalStatus.EXPIRED})
DELETABLE_STATUSES = frozenset({ProposalStatus.DRAFT})
RESPONDABLE_STATUSES = frozenset({ProposalStatus.SENT, ProposalStatus.VIEWED})


class ProposalGuard(BaseGuard):
    """Proposals combine the tenant/assignment matrix with the proposal workflow.

    Only draft, rejected and expired proposals are editable; only drafts can be
    deleted or sent. Clients respond through their portal credential, so
    :meth:`can_respond` takes no identity.
    """

    transitions = PROPOSAL_TRANSITIONS

    def can_view(self, identity: Identity, proposal: Any) -> bool:
        identity = self._identity(identity)
        resource = self._resource(proposal)
        return self._scoped_access(identity, resource, client_roles=CLIENT_ROLES, client_id=resource.client_id)

    def can_create(self, identity: Identity) -> bool:
        return self._is_staff(self._identity(identity))

    def can_edit(self, identity: Identity, proposal: Any) -> bool:
        identity = self._identity(identity)
        resource = self._resource(proposal)
        if resource.status not in EDITABLE_STATUSES:
            return False
        return self._staff_access(identity, resource)

    def can_delete(self, identity: Identity, proposal: Any) -> bool:
        identity = self._identity(identity)
        resource = self._resource(proposal)
        if resource.status not in DELETABLE_STATUSES:
            return False
        return self._staff_access(identity, resource)

    def can_send(self, identity: Identity, proposal: Any) -> bool:
        resource = self._resource(proposal)
        if not self.can_edit(identity, resource):
            return False
        return resource.status == ProposalStatus.DRAFT

    def can_respond(self, proposal: Any) -> bool:
        return self._resource(proposal).status in RESPONDABLE_STATUSES

    def can_convert_to_invoice(self, identity: Identity, proposal: Any) -> bool:
        identity = self._identity(identity)
        resource = self._resource(proposal)
        if resource.status != ProposalStatus.ACCEPTED:
            return False
        if resource.converted_to_invoice_id is not None:
            return False
        return self._staff_access(identity, resource)

    def is_valid_status_transition(self, from_status: str, to_status: str) -> bool:
        return to_status in self.transitions.get(from_status, ())

    def get_allowed_transitions(self, current_status: str) -> list[str]:
        return [str(status) for status in self.transitions.get(current_status, ())]

    def permission_summary(self, identity: Identity, proposal: Any = None) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "can_create": self.can_create(identity),
            "can_view": None,
            "can_edit": None,
            "can_delete": None,
        }
        if proposal is None:
            return summary

        resource = self._resource(proposal)
        summary.update(
            {
                "can_view": self.can_view(identity, resource),
                "can_edit": self.can_edit(identity, resource),
                "can_delete": self.can_delete(identity, resource),
                "can_send": self.can_send(identity, resource),
                "can_convert_to_invoice": self.can_convert_to_invoice(identity, resource),
                "allowed_transitions": self.get_allowed_transitions(resource.status or ProposalStatus.DRAFT),
            }
        )
        return summary
