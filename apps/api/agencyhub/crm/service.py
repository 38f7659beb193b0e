from __future__ import annotations

import logging
import shutil
from typing import Any, TypeVar

from fastapi import status
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from agencyhub.api.errors import ApiError
from agencyhub.crm.models import Client, CsvImport, Deal, Pipeline, PipelineStage, Proposal, RecurringInvoice, utcnow
from agencyhub.crm.schemas import CSV_ENTITY_TYPES
from agencyhub.guards import (
    ClientGuard,
    CsvImportGuard,
    DealGuard,
    PipelineGuard,
    ProposalGuard,
    ProposalStatus,
    RecurringInvoiceGuard,
    RecurringInvoiceStatus,
    UploadedFile,
)
from agencyhub.platform.security.context import Identity

logger = logging.getLogger("agencyhub.guards")

ModelT = TypeVar("ModelT")

CLIENT_RESPONSE_STATUSES = frozenset({ProposalStatus.VIEWED, ProposalStatus.ACCEPTED, ProposalStatus.REJECTED})


def _forbidden(identity: Identity, action: str, resource_type: str, resource_id: str) -> ApiError:
    logger.info(
        "guard_denied %s %s",
        resource_type,
        resource_id,
        extra={**identity.as_log_fields(), "reason": f"{resource_type}.{action}"},
    )
    return ApiError(
        status.HTTP_403_FORBIDDEN,
        "FORBIDDEN",
        f"You do not have permission to {action.replace('_', ' ')} this {resource_type.replace('_', ' ')}.",
    )


def _load(session: Session, model: type[ModelT], resource_id: str, resource_type: str) -> ModelT:
    record = session.get(model, resource_id)
    if record is None:
        raise ApiError(status.HTTP_404_NOT_FOUND, "NOT_FOUND", f"{resource_type.replace('_', ' ').capitalize()} not found")
    return record


class ClientService:
    def __init__(self, guard: ClientGuard | None = None) -> None:
        self.guard = guard or ClientGuard()

    def get_client(self, session: Session, identity: Identity, client_id: str) -> tuple[Client, dict[str, Any]]:
        client = _load(session, Client, client_id, "client")
        if not self.guard.can_view(identity, client):
            raise _forbidden(identity, "view", "client", client_id)
        return client, self.guard.permission_summary(identity, client)

    def delete_client(self, session: Session, identity: Identity, client_id: str) -> None:
        client = _load(session, Client, client_id, "client")
        if not self.guard.can_delete(identity, client):
            raise _forbidden(identity, "delete", "client", client_id)
        session.delete(client)
        session.commit()

    def list_assigned_users(self, session: Session, identity: Identity, client_id: str) -> list[dict[str, Any]]:
        client = _load(session, Client, client_id, "client")
        if not self.guard.can_manage_users(identity, client):
            raise _forbidden(identity, "manage_users", "client", client_id)
        return self.guard.get_assigned_users(client.id)


class DealService:
    def __init__(self, guard: DealGuard | None = None, pipeline_guard: PipelineGuard | None = None) -> None:
        self.guard = guard or DealGuard()
        self.pipeline_guard = pipeline_guard or PipelineGuard()

    def get_deal(self, session: Session, identity: Identity, deal_id: str) -> tuple[Deal, dict[str, Any]]:
        deal = _load(session, Deal, deal_id, "deal")
        if not self.guard.can_view(identity, deal):
            raise _forbidden(identity, "view", "deal", deal_id)
        return deal, self.guard.permission_summary(identity, deal)

    def move_stage(self, session: Session, identity: Identity, deal_id: str, stage_id: str) -> Deal:
        deal = _load(session, Deal, deal_id, "deal")
        if not self.guard.can_move_stage(identity, deal):
            raise _forbidden(identity, "move_stage", "deal", deal_id)

        stage = session.get(PipelineStage, stage_id)
        if stage is None or stage.pipeline_id != deal.pipeline_id:
            raise ApiError(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                "VALIDATION_FAILED",
                "Stage does not belong to the deal's pipeline",
                details={"stage_id": stage_id, "pipeline_id": deal.pipeline_id},
            )
        deal.stage_id = stage.id
        session.commit()
        session.refresh(deal)
        return deal

    def get_pipeline(self, session: Session, identity: Identity, pipeline_id: str) -> tuple[Pipeline, dict[str, Any]]:
        pipeline = session.scalar(
            select(Pipeline).options(selectinload(Pipeline.stages)).where(Pipeline.id == pipeline_id)
        )
        if pipeline is None:
            raise ApiError(status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Pipeline not found")
        if not self.pipeline_guard.can_view(identity, pipeline):
            raise _forbidden(identity, "view", "pipeline", pipeline_id)
        return pipeline, self.pipeline_guard.permission_summary(identity, pipeline)


class ProposalService:
    def __init__(self, guard: ProposalGuard | None = None) -> None:
        self.guard = guard or ProposalGuard()

    def get_proposal(self, session: Session, identity: Identity, proposal_id: str) -> tuple[Proposal, dict[str, Any]]:
        proposal = _load(session, Proposal, proposal_id, "proposal")
        if not self.guard.can_view(identity, proposal):
            raise _forbidden(identity, "view", "proposal", proposal_id)
        return proposal, self.guard.permission_summary(identity, proposal)

    def send(self, session: Session, identity: Identity, proposal_id: str) -> Proposal:
        proposal = _load(session, Proposal, proposal_id, "proposal")
        if not self.guard.can_send(identity, proposal):
            raise _forbidden(identity, "send", "proposal", proposal_id)
        proposal.status = ProposalStatus.SENT.value
        proposal.sent_at = utcnow()
        session.commit()
        session.refresh(proposal)
        return proposal

    def change_status(self, session: Session, identity: Identity, proposal_id: str, target: str) -> Proposal:
        """Staff-side workflow moves: expiring an outstanding proposal or reopening a closed one."""

        proposal = _load(session, Proposal, proposal_id, "proposal")
        if not (self.guard.can_create(identity) and self.guard.can_view(identity, proposal)):
            raise _forbidden(identity, "update", "proposal", proposal_id)

        if not self.guard.is_valid_status_transition(proposal.status, target):
            raise ApiError(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                "VALIDATION_FAILED",
                f"Cannot move proposal from {proposal.status} to {target}",
                details={"allowed": self.guard.get_allowed_transitions(proposal.status)},
            )
        if target in CLIENT_RESPONSE_STATUSES:
            raise ApiError(
                status.HTTP_403_FORBIDDEN,
                "FORBIDDEN",
                "Only the client can view, accept or reject a proposal.",
            )
        if target == ProposalStatus.SENT:
            return self.send(session, identity, proposal_id)

        proposal.status = target
        session.commit()
        session.refresh(proposal)
        return proposal


class RecurringInvoiceService:
    def __init__(self, guard: RecurringInvoiceGuard | None = None) -> None:
        self.guard = guard or RecurringInvoiceGuard()

    def get(self, session: Session, identity: Identity, invoice_id: str) -> tuple[RecurringInvoice, dict[str, Any]]:
        invoice = _load(session, RecurringInvoice, invoice_id, "recurring_invoice")
        if not self.guard.can_view(identity, invoice):
            raise _forbidden(identity, "view", "recurring_invoice", invoice_id)
        return invoice, self.guard.permission_summary(identity, invoice)

    def pause(self, session: Session, identity: Identity, invoice_id: str) -> RecurringInvoice:
        invoice = _load(session, RecurringInvoice, invoice_id, "recurring_invoice")
        if not self.guard.can_pause(identity, invoice):
            raise _forbidden(identity, "pause", "recurring_invoice", invoice_id)
        return self._transition(session, invoice, RecurringInvoiceStatus.PAUSED)

    def resume(self, session: Session, identity: Identity, invoice_id: str) -> RecurringInvoice:
        invoice = _load(session, RecurringInvoice, invoice_id, "recurring_invoice")
        if not self.guard.can_resume(identity, invoice):
            raise _forbidden(identity, "resume", "recurring_invoice", invoice_id)
        return self._transition(session, invoice, RecurringInvoiceStatus.ACTIVE)

    def cancel(self, session: Session, identity: Identity, invoice_id: str) -> RecurringInvoice:
        invoice = _load(session, RecurringInvoice, invoice_id, "recurring_invoice")
        if not self.guard.can_cancel(identity, invoice):
            raise _forbidden(identity, "cancel", "recurring_invoice", invoice_id)
        return self._transition(session, invoice, RecurringInvoiceStatus.CANCELLED)

    def _transition(
        self, session: Session, invoice: RecurringInvoice, target: RecurringInvoiceStatus
    ) -> RecurringInvoice:
        if not self.guard.is_valid_status_transition(invoice.status, target):
            raise ApiError(
                status.HTTP_409_CONFLICT,
                "CONFLICT",
                f"Cannot move recurring invoice from {invoice.status} to {target.value}",
            )
        invoice.status = target.value
        session.commit()
        session.refresh(invoice)
        return invoice


class CsvImportService:
    def __init__(self, guard: CsvImportGuard | None = None) -> None:
        self.guard = guard or CsvImportGuard()

    def get(self, session: Session, identity: Identity, import_id: str) -> tuple[CsvImport, dict[str, Any]]:
        csv_import = _load(session, CsvImport, import_id, "csv_import")
        if not self.guard.can_view(identity, csv_import):
            raise _forbidden(identity, "view", "csv_import", import_id)
        return csv_import, self.guard.permission_summary(identity, csv_import)

    def history(self, session: Session, identity: Identity, *, limit: int = 50) -> list[CsvImport]:
        if not self.guard.can_view_history(identity):
            raise _forbidden(identity, "view", "import_history", "-")
        query = select(CsvImport).order_by(CsvImport.created_at.desc()).limit(limit)
        if identity.agency_id and not identity.is_owner:
            query = query.where(CsvImport.agency_id == identity.agency_id)
        return self.guard.filter_viewable_imports(identity, session.scalars(query))

    def upload(
        self, session: Session, identity: Identity, entity_type: str, upload: UploadedFile | None
    ) -> CsvImport:
        if not self.guard.can_create(identity):
            raise _forbidden(identity, "create", "csv_import", "-")
        if entity_type not in CSV_ENTITY_TYPES:
            raise ApiError(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                "VALIDATION_FAILED",
                "Invalid entity type selected.",
                details={"allowed": list(CSV_ENTITY_TYPES)},
            )
        if not self.guard.can_import_entity_type(identity, entity_type):
            raise _forbidden(identity, "import", entity_type, "-")

        result = self.guard.validate_file_upload(upload)
        if not result.valid:
            raise ApiError(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                "VALIDATION_FAILED",
                "Uploaded file failed validation",
                details=result.as_dict(),
            )

        stored_filename = self.guard.get_safe_filename(upload.name)
        destination = self.guard.get_upload_directory() / stored_filename
        shutil.move(str(upload.path), destination)

        csv_import = CsvImport(
            agency_id=identity.agency_id,
            user_id=identity.id,
            entity_type=entity_type,
            original_filename=upload.name,
            stored_filename=stored_filename,
            file_size=upload.size,
            status="pending",
        )
        session.add(csv_import)
        session.commit()
        session.refresh(csv_import)
        return csv_import
