from __future__ import annotations

import os
import tempfile
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile, status
from sqlalchemy.orm import Session

from agencyhub.core.auth import get_current_identity
from agencyhub.core.config import get_settings
from agencyhub.core.database import get_db
from agencyhub.crm.schemas import (
    AssignedUserRead,
    ClientRead,
    CsvImportRead,
    DealMoveStageRequest,
    DealRead,
    GuardedRead,
    PipelineRead,
    ProposalRead,
    ProposalStatusRequest,
    RecurringInvoiceRead,
)
from agencyhub.crm.service import (
    ClientService,
    CsvImportService,
    DealService,
    ProposalService,
    RecurringInvoiceService,
)
from agencyhub.guards import UploadedFile
from agencyhub.platform.security.context import Identity

clients_router = APIRouter(prefix="/clients", tags=["clients"])
deals_router = APIRouter(prefix="/deals", tags=["deals"])
pipelines_router = APIRouter(prefix="/pipelines", tags=["pipelines"])
proposals_router = APIRouter(prefix="/proposals", tags=["proposals"])
recurring_invoices_router = APIRouter(prefix="/recurring-invoices", tags=["recurring-invoices"])
csv_imports_router = APIRouter(prefix="/csv-imports", tags=["csv-imports"])

client_service = ClientService()
deal_service = DealService()
proposal_service = ProposalService()
recurring_invoice_service = RecurringInvoiceService()
csv_import_service = CsvImportService()

_UPLOAD_CHUNK = 64 * 1024


def _guarded(schema: Any, record: Any, permissions: dict[str, Any]) -> GuardedRead:
    return GuardedRead(data=schema.model_validate(record).model_dump(mode="json"), permissions=permissions)


@clients_router.get("/{client_id}", response_model=GuardedRead)
def get_client(
    client_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> GuardedRead:
    client, permissions = client_service.get_client(db, identity, client_id)
    return _guarded(ClientRead, client, permissions)


@clients_router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client(
    client_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> Response:
    client_service.delete_client(db, identity, client_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@clients_router.get("/{client_id}/users", response_model=list[AssignedUserRead])
def list_client_users(
    client_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> list[dict[str, Any]]:
    return client_service.list_assigned_users(db, identity, client_id)


@deals_router.get("/{deal_id}", response_model=GuardedRead)
def get_deal(
    deal_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> GuardedRead:
    deal, permissions = deal_service.get_deal(db, identity, deal_id)
    return _guarded(DealRead, deal, permissions)


@deals_router.post("/{deal_id}/move-stage", response_model=DealRead)
def move_deal_stage(
    deal_id: str,
    dto: DealMoveStageRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> DealRead:
    deal = deal_service.move_stage(db, identity, deal_id, dto.stage_id)
    return DealRead.model_validate(deal)


@pipelines_router.get("/{pipeline_id}", response_model=GuardedRead)
def get_pipeline(
    pipeline_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> GuardedRead:
    pipeline, permissions = deal_service.get_pipeline(db, identity, pipeline_id)
    return _guarded(PipelineRead, pipeline, permissions)


@proposals_router.get("/{proposal_id}", response_model=GuardedRead)
def get_proposal(
    proposal_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> GuardedRead:
    proposal, permissions = proposal_service.get_proposal(db, identity, proposal_id)
    return _guarded(ProposalRead, proposal, permissions)


@proposals_router.post("/{proposal_id}/send", response_model=ProposalRead)
def send_proposal(
    proposal_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> ProposalRead:
    return ProposalRead.model_validate(proposal_service.send(db, identity, proposal_id))


@proposals_router.post("/{proposal_id}/status", response_model=ProposalRead)
def change_proposal_status(
    proposal_id: str,
    dto: ProposalStatusRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> ProposalRead:
    return ProposalRead.model_validate(proposal_service.change_status(db, identity, proposal_id, dto.status))


@recurring_invoices_router.get("/{invoice_id}", response_model=GuardedRead)
def get_recurring_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> GuardedRead:
    invoice, permissions = recurring_invoice_service.get(db, identity, invoice_id)
    return _guarded(RecurringInvoiceRead, invoice, permissions)


@recurring_invoices_router.post("/{invoice_id}/pause", response_model=RecurringInvoiceRead)
def pause_recurring_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> RecurringInvoiceRead:
    return RecurringInvoiceRead.model_validate(recurring_invoice_service.pause(db, identity, invoice_id))


@recurring_invoices_router.post("/{invoice_id}/resume", response_model=RecurringInvoiceRead)
def resume_recurring_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> RecurringInvoiceRead:
    return RecurringInvoiceRead.model_validate(recurring_invoice_service.resume(db, identity, invoice_id))


@recurring_invoices_router.post("/{invoice_id}/cancel", response_model=RecurringInvoiceRead)
def cancel_recurring_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> RecurringInvoiceRead:
    return RecurringInvoiceRead.model_validate(recurring_invoice_service.cancel(db, identity, invoice_id))


@csv_imports_router.get("", response_model=list[CsvImportRead])
def list_csv_imports(
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> list[CsvImportRead]:
    return [CsvImportRead.model_validate(item) for item in csv_import_service.history(db, identity)]


@csv_imports_router.post("", response_model=CsvImportRead, status_code=status.HTTP_201_CREATED)
def upload_csv_import(
    entity_type: str = Form(...),
    file: UploadFile | None = File(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> CsvImportRead:
    spooled = _spool_upload(file) if file is not None and file.filename else None
    try:
        csv_import = csv_import_service.upload(db, identity, entity_type, spooled)
    finally:
        if spooled is not None and spooled.path and os.path.exists(spooled.path):
            os.unlink(spooled.path)
    return CsvImportRead.model_validate(csv_import)


@csv_imports_router.get("/{import_id}", response_model=GuardedRead)
def get_csv_import(
    import_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> GuardedRead:
    csv_import, permissions = csv_import_service.get(db, identity, import_id)
    return _guarded(CsvImportRead, csv_import, permissions)


def _spool_upload(file: UploadFile) -> UploadedFile:
    # Copying stops at the first chunk past the limit; validation reports the size error.
    limit = get_settings().csv_max_upload_bytes
    size = 0
    with tempfile.NamedTemporaryFile(prefix="csv-upload-", delete=False) as handle:
        while size <= limit:
            chunk = file.file.read(_UPLOAD_CHUNK)
            if not chunk:
                break
            handle.write(chunk)
            size += len(chunk)
    return UploadedFile(name=file.filename or "", path=handle.name, size=size)
