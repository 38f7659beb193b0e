from __future__ import annotations

import pytest

from agencyhub.guards import ProposalGuard, ProposalStatus
from agencyhub.platform.security.assignments import InMemoryClientAssignmentLookup
from agencyhub.platform.security.context import Identity


OWNER = Identity(id="owner-1", role_name="owner")
AGENCY = Identity(id="agency-1", role_name="agency", agency_id="agency-a")
FOREIGN_AGENCY = Identity(id="agency-2", role_name="agency", agency_id="agency-b")
DIRECT = Identity(id="direct-1", role_name="direct_client", agency_id="agency-a")


@pytest.fixture()
def guard() -> ProposalGuard:
    return ProposalGuard(assignments=InMemoryClientAssignmentLookup([("direct-1", "client-1")]))


def _proposal(status: str, **overrides: str | None) -> dict[str, str | None]:
    record: dict[str, str | None] = {
        "id": "proposal-1",
        "agency_id": "agency-a",
        "client_id": "client-1",
        "status": status,
        "converted_to_invoice_id": None,
    }
    record.update(overrides)
    return record


@pytest.mark.parametrize("status", ["draft", "rejected", "expired"])
def test_editable_statuses_allow_staff_edit(guard: ProposalGuard, status: str) -> None:
    assert guard.can_edit(AGENCY, _proposal(status))
    assert guard.can_edit(OWNER, _proposal(status))
    assert not guard.can_edit(FOREIGN_AGENCY, _proposal(status))


@pytest.mark.parametrize("status", ["sent", "viewed", "accepted"])
def test_locked_statuses_deny_edit_even_for_owner(guard: ProposalGuard, status: str) -> None:
    assert not guard.can_edit(OWNER, _proposal(status))
    assert not guard.can_edit(AGENCY, _proposal(status))


def test_only_drafts_can_be_deleted_or_sent(guard: ProposalGuard) -> None:
    assert guard.can_delete(AGENCY, _proposal("draft"))
    assert guard.can_send(AGENCY, _proposal("draft"))

    for status in ("sent", "viewed", "accepted", "rejected", "expired"):
        assert not guard.can_delete(OWNER, _proposal(status))
        assert not guard.can_send(OWNER, _proposal(status))


def test_client_roles_view_assigned_proposals_only(guard: ProposalGuard) -> None:
    assert guard.can_view(DIRECT, _proposal("sent"))
    assert not guard.can_view(DIRECT, _proposal("sent", client_id="client-2"))
    assert not guard.can_edit(DIRECT, _proposal("draft"))
    assert not guard.can_create(DIRECT)


@pytest.mark.parametrize(
    ("status", "expected"),
    [("draft", False), ("sent", True), ("viewed", True), ("accepted", False), ("rejected", False), ("expired", False)],
)
def test_can_respond_depends_only_on_status(guard: ProposalGuard, status: str, expected: bool) -> None:
    assert guard.can_respond(_proposal(status)) is expected


def test_convert_to_invoice_requires_accepted_and_unconverted(guard: ProposalGuard) -> None:
    assert guard.can_convert_to_invoice(AGENCY, _proposal("accepted"))
    assert not guard.can_convert_to_invoice(AGENCY, _proposal("accepted", converted_to_invoice_id="invoice-9"))
    assert not guard.can_convert_to_invoice(AGENCY, _proposal("sent"))
    assert not guard.can_convert_to_invoice(FOREIGN_AGENCY, _proposal("accepted"))


def test_status_transition_table(guard: ProposalGuard) -> None:
    assert guard.is_valid_status_transition("draft", "sent")
    assert guard.is_valid_status_transition("sent", "viewed")
    assert guard.is_valid_status_transition("viewed", "accepted")
    assert guard.is_valid_status_transition("rejected", "draft")
    assert guard.is_valid_status_transition("expired", "draft")

    assert not guard.is_valid_status_transition("draft", "accepted")
    assert not guard.is_valid_status_transition("viewed", "sent")
    assert not guard.is_valid_status_transition("accepted", "draft")
    assert not guard.is_valid_status_transition("unknown", "draft")


def test_allowed_transitions_listing(guard: ProposalGuard) -> None:
    assert guard.get_allowed_transitions(ProposalStatus.SENT) == ["viewed", "accepted", "rejected", "expired"]
    assert guard.get_allowed_transitions("accepted") == []
    assert guard.get_allowed_transitions("bogus") == []
