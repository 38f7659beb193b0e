from __future__ import annotations

import pytest

from agencyhub.guards import RecurringInvoiceGuard
from agencyhub.platform.security.assignments import InMemoryClientAssignmentLookup
from agencyhub.platform.security.context import Identity


OWNER = Identity(id="owner-1", role_name="owner")
AGENCY = Identity(id="agency-1", role_name="agency", agency_id="agency-a")
DIRECT = Identity(id="direct-1", role_name="direct_client", agency_id="agency-a")
END = Identity(id="end-1", role_name="end_client", agency_id="agency-a")


@pytest.fixture()
def guard() -> RecurringInvoiceGuard:
    lookup = InMemoryClientAssignmentLookup([("direct-1", "client-1"), ("end-1", "client-1")])
    return RecurringInvoiceGuard(assignments=lookup)


def _schedule(status: str = "active", client_id: str = "client-1") -> dict[str, str]:
    return {"id": "ri-1", "agency_id": "agency-a", "client_id": client_id, "status": status}


def test_end_clients_never_see_schedules_even_when_assigned(guard: RecurringInvoiceGuard) -> None:
    assert not guard.can_view(END, _schedule())


def test_direct_clients_see_assigned_schedules(guard: RecurringInvoiceGuard) -> None:
    assert guard.can_view(DIRECT, _schedule())
    assert not guard.can_view(DIRECT, _schedule(client_id="client-2"))
    assert not guard.can_edit(DIRECT, _schedule())
    assert not guard.can_pause(DIRECT, _schedule())


@pytest.mark.parametrize("status", ["completed", "cancelled"])
def test_terminal_schedules_are_locked_for_everyone(guard: RecurringInvoiceGuard, status: str) -> None:
    assert not guard.can_edit(OWNER, _schedule(status))
    assert not guard.can_cancel(OWNER, _schedule(status))
    assert not guard.can_pause(AGENCY, _schedule(status))
    assert not guard.can_resume(AGENCY, _schedule(status))


def test_only_owner_deletes(guard: RecurringInvoiceGuard) -> None:
    assert guard.can_delete(OWNER, _schedule())
    assert not guard.can_delete(AGENCY, _schedule())


def test_lifecycle_actions_follow_status(guard: RecurringInvoiceGuard) -> None:
    assert guard.can_pause(AGENCY, _schedule("active"))
    assert not guard.can_resume(AGENCY, _schedule("active"))
    assert guard.can_resume(AGENCY, _schedule("paused"))
    assert not guard.can_pause(AGENCY, _schedule("paused"))
    assert guard.can_cancel(AGENCY, _schedule("active"))
    assert guard.can_cancel(AGENCY, _schedule("paused"))


def test_transition_table(guard: RecurringInvoiceGuard) -> None:
    assert guard.is_valid_status_transition("active", "paused")
    assert guard.is_valid_status_transition("paused", "active")
    assert guard.is_valid_status_transition("paused", "cancelled")
    assert not guard.is_valid_status_transition("cancelled", "active")
    assert not guard.is_valid_status_transition("completed", "active")
    assert guard.get_allowed_transitions("cancelled") == []


def test_permission_summary_without_resource(guard: RecurringInvoiceGuard) -> None:
    summary = guard.permission_summary(END)

    assert summary["can_create"] is False
    assert summary["can_view"] is None
