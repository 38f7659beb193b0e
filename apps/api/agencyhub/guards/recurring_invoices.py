from __future__ import annotations

from enum import StrEnum
from types import MappingProxyType
from typing import Any

from agencyhub.guards.base import BaseGuard
from agencyhub.platform.security.context import Identity, Role


class RecurringInvoiceStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


RECURRING_INVOICE_TRANSITIONS: MappingProxyType[str, tuple[str, ...]] = MappingProxyType(
    {
        RecurringInvoiceStatus.ACTIVE: (RecurringInvoiceStatus.PAUSED, RecurringInvoiceStatus.CANCELLED),
        RecurringInvoiceStatus.PAUSED: (RecurringInvoiceStatus.ACTIVE, RecurringInvoiceStatus.CANCELLED),
        RecurringInvoiceStatus.COMPLETED: (),
        RecurringInvoiceStatus.CANCELLED: (),
    }
)

LOCKED_STATUSES = frozenset({RecurringInvoiceStatus.COMPLETED, RecurringInvoiceStatus.CANCELLED})
CANCELLABLE_STATUSES = frozenset({RecurringInvoiceStatus.ACTIVE, RecurringInvoiceStatus.PAUSED})

_VIEW_CLIENT_ROLES = frozenset({Role.DIRECT_CLIENT})


class RecurringInvoiceGuard(BaseGuard):
    """Recurring invoice schedules.

    End clients never see them, even when assigned; direct clients see schedules of
    clients they are assigned to. Only the owner deletes.
    """

    transitions = RECURRING_INVOICE_TRANSITIONS

    def can_view(self, identity: Identity, recurring_invoice: Any) -> bool:
        identity = self._identity(identity)
        resource = self._resource(recurring_invoice)
        if identity.role is Role.END_CLIENT:
            return False
        return self._scoped_access(identity, resource, client_roles=_VIEW_CLIENT_ROLES, client_id=resource.client_id)

    def can_create(self, identity: Identity) -> bool:
        return self._is_staff(self._identity(identity))

    def can_edit(self, identity: Identity, recurring_invoice: Any) -> bool:
        identity = self._identity(identity)
        resource = self._resource(recurring_invoice)
        if resource.status in LOCKED_STATUSES:
            return False
        return self._staff_access(identity, resource)

    def can_delete(self, identity: Identity, recurring_invoice: Any) -> bool:
        self._resource(recurring_invoice)
        return self._identity(identity).role is Role.OWNER

    def can_pause(self, identity: Identity, recurring_invoice: Any) -> bool:
        resource = self._resource(recurring_invoice)
        if resource.status != RecurringInvoiceStatus.ACTIVE:
            return False
        return self.can_edit(identity, resource)

    def can_resume(self, identity: Identity, recurring_invoice: Any) -> bool:
        resource = self._resource(recurring_invoice)
        if resource.status != RecurringInvoiceStatus.PAUSED:
            return False
        return self.can_edit(identity, resource)

    def can_cancel(self, identity: Identity, recurring_invoice: Any) -> bool:
        resource = self._resource(recurring_invoice)
        if resource.status not in CANCELLABLE_STATUSES:
            return False
        return self.can_edit(identity, resource)

    def is_valid_status_transition(self, from_status: str, to_status: str) -> bool:
        return to_status in self.transitions.get(from_status, ())

    def get_allowed_transitions(self, current_status: str) -> list[str]:
        return [str(status) for status in self.transitions.get(current_status, ())]

    def permission_summary(self, identity: Identity, recurring_invoice: Any = None) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "can_create": self.can_create(identity),
            "can_view": None,
            "can_edit": None,
            "can_delete": None,
        }
        if recurring_invoice is None:
            return summary

        resource = self._resource(recurring_invoice)
        summary.update(
            {
                "can_view": self.can_view(identity, resource),
                "can_edit": self.can_edit(identity, resource),
                "can_delete": self.can_delete(identity, resource),
                "can_pause": self.can_pause(identity, resource),
                "can_resume": self.can_resume(identity, resource),
                "can_cancel": self.can_cancel(identity, resource),
                "allowed_transitions": self.get_allowed_transitions(resource.status or RecurringInvoiceStatus.ACTIVE),
            }
        )
        return summary
