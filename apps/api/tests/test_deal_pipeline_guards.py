from __future__ import annotations

from types import SimpleNamespace

import pytest

from agencyhub.guards import DealGuard, PipelineGuard
from agencyhub.platform.security.assignments import InMemoryClientAssignmentLookup
from agencyhub.platform.security.context import Identity


@pytest.fixture()
def lookup() -> InMemoryClientAssignmentLookup:
    return InMemoryClientAssignmentLookup([("direct-1", "client-1"), ("end-1", "client-1")])


@pytest.fixture()
def deal() -> SimpleNamespace:
    return SimpleNamespace(id="deal-1", agency_id="agency-a", client_id="client-1", status="open")


@pytest.fixture()
def pipeline() -> SimpleNamespace:
    return SimpleNamespace(id="pipeline-1", agency_id="agency-a")


def test_deal_owner_and_agency_matrix(lookup: InMemoryClientAssignmentLookup, deal: SimpleNamespace) -> None:
    guard = DealGuard(assignments=lookup)
    owner = Identity(id="owner-1", role_name="owner")
    agency = Identity(id="agency-1", role_name="agency", agency_id="agency-a")
    foreign = Identity(id="agency-2", role_name="agency", agency_id="agency-b")

    for action in (guard.can_view, guard.can_edit, guard.can_delete, guard.can_move_stage, guard.can_close_deal):
        assert action(owner, deal)
        assert action(agency, deal)
        assert not action(foreign, deal)

    assert guard.can_convert_to_project(agency, deal)
    assert guard.can_create(agency)


def test_deal_client_roles_are_read_only_when_assigned(
    lookup: InMemoryClientAssignmentLookup, deal: SimpleNamespace
) -> None:
    guard = DealGuard(assignments=lookup)
    direct = Identity(id="direct-1", role_name="direct_client", agency_id="agency-a")
    end = Identity(id="end-1", role_name="end_client", agency_id="agency-a")
    unassigned = Identity(id="direct-9", role_name="direct_client", agency_id="agency-a")

    assert guard.can_view(direct, deal)
    assert guard.can_view(end, deal)
    assert not guard.can_view(unassigned, deal)
    assert not guard.can_edit(direct, deal)
    assert not guard.can_move_stage(end, deal)
    assert not guard.can_create(direct)


def test_deal_without_client_is_invisible_to_client_roles(lookup: InMemoryClientAssignmentLookup) -> None:
    guard = DealGuard(assignments=lookup)
    direct = Identity(id="direct-1", role_name="direct_client", agency_id="agency-a")

    assert not guard.can_view(direct, {"id": "deal-2", "agency_id": "agency-a", "client_id": None})


def test_deal_permission_summary(lookup: InMemoryClientAssignmentLookup, deal: SimpleNamespace) -> None:
    guard = DealGuard(assignments=lookup)
    end = Identity(id="end-1", role_name="end_client", agency_id="agency-a")

    summary = guard.permission_summary(end, deal)

    assert summary["can_view"] is True
    assert summary["can_edit"] is False
    assert summary["can_create"] is False


def test_pipelines_are_never_visible_to_client_roles(
    lookup: InMemoryClientAssignmentLookup, pipeline: SimpleNamespace
) -> None:
    guard = PipelineGuard(assignments=lookup)
    direct = Identity(id="direct-1", role_name="direct_client", agency_id="agency-a")
    end = Identity(id="end-1", role_name="end_client", agency_id="agency-a")

    for identity in (direct, end):
        assert not guard.can_view(identity, pipeline)
        assert not guard.can_edit(identity, pipeline)
        assert not guard.can_manage_stages(identity, pipeline)
        assert not guard.can_create(identity)


def test_pipeline_agency_isolation(pipeline: SimpleNamespace) -> None:
    guard = PipelineGuard(assignments=InMemoryClientAssignmentLookup())
    agency = Identity(id="agency-1", role_name="agency", agency_id="agency-a")
    foreign = Identity(id="agency-2", role_name="agency", agency_id="agency-b")
    owner = Identity(id="owner-1", role_name="owner")

    assert guard.can_manage_stages(agency, pipeline)
    assert guard.can_delete(agency, pipeline)
    assert not guard.can_view(foreign, pipeline)
    assert guard.permission_summary(owner, pipeline) == {
        "can_create": True,
        "can_view": True,
        "can_edit": True,
        "can_delete": True,
        "can_manage_stages": True,
    }
