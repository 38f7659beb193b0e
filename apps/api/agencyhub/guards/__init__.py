from agencyhub.guards.base import AuthorizationGuard, BaseGuard, GuardResource, normalize_identity, normalize_resource
from agencyhub.guards.clients import ClientGuard
from agencyhub.guards.csv_imports import CsvImportGuard, FileValidationResult, UploadedFile
from agencyhub.guards.deals import DealGuard
from agencyhub.guards.pipelines import PipelineGuard
from agencyhub.guards.proposals import ProposalGuard, ProposalStatus
from agencyhub.guards.recurring_invoices import RecurringInvoiceGuard, RecurringInvoiceStatus

__all__ = [
    "AuthorizationGuard",
    "BaseGuard",
    "GuardResource",
    "normalize_identity",
    "normalize_resource",
    "ClientGuard",
    "CsvImportGuard",
    "FileValidationResult",
    "UploadedFile",
    "DealGuard",
    "PipelineGuard",
    "ProposalGuard",
    "ProposalStatus",
    "RecurringInvoiceGuard",
    "RecurringInvoiceStatus",
]
