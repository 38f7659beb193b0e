from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agency_id: str
    name: str
    email: str | None
    is_active: bool
    created_at: datetime


class AssignedUserRead(BaseModel):
    user_id: str
    is_active: bool
    name: str | None
    email: str | None
    role: str | None


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    position: int


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agency_id: str
    name: str
    is_default: bool
    stages: list[PipelineStageRead] = Field(default_factory=list)


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agency_id: str
    client_id: str | None
    pipeline_id: str
    stage_id: str | None
    title: str
    value: Decimal | None
    status: str


class DealMoveStageRequest(BaseModel):
    stage_id: str = Field(min_length=1)


class ProposalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agency_id: str
    client_id: str | None
    title: str
    status: str
    total: Decimal | None
    converted_to_invoice_id: str | None
    sent_at: datetime | None
    responded_at: datetime | None


class ProposalStatusRequest(BaseModel):
    status: str = Field(min_length=1)


class RecurringInvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agency_id: str
    client_id: str
    title: str
    frequency: str
    status: str
    next_invoice_date: date | None


class CsvImportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agency_id: str | None
    user_id: str
    entity_type: str
    original_filename: str
    file_size: int
    status: str
    created_at: datetime


CSV_ENTITY_TYPES = ("clients", "contacts", "notes")


class GuardedRead(BaseModel):
    """A record together with the caller's UI permission hints."""

    data: Any
    permissions: dict[str, Any]
