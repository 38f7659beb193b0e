from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from agencyhub.core.auth import get_current_identity
from agencyhub.core.config import get_settings
from agencyhub.crm.api import (
    clients_router,
    csv_imports_router,
    deals_router,
    pipelines_router,
    proposals_router,
    recurring_invoices_router,
)
from agencyhub.guards import (
    ClientGuard,
    CsvImportGuard,
    DealGuard,
    PipelineGuard,
    ProposalGuard,
    RecurringInvoiceGuard,
)
from agencyhub.metrics import generate_metrics_payload, metrics_content_type
from agencyhub.platform.security.context import Identity
from agencyhub.portal.api import router as portal_router

router = APIRouter()
router.include_router(clients_router)
router.include_router(deals_router)
router.include_router(pipelines_router)
router.include_router(proposals_router)
router.include_router(recurring_invoices_router)
router.include_router(csv_imports_router)
router.include_router(portal_router)

_dashboard_guards = {
    "clients": ClientGuard(),
    "deals": DealGuard(),
    "pipelines": PipelineGuard(),
    "proposals": ProposalGuard(),
    "recurring_invoices": RecurringInvoiceGuard(),
    "csv_imports": CsvImportGuard(),
}


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(identity: Identity = Depends(get_current_identity)) -> dict[str, str | None]:
    return {
        "id": identity.id,
        "email": identity.email,
        "role": identity.role_name,
        "agency_id": identity.agency_id,
    }


@router.get("/dashboard", tags=["auth"])
def dashboard(identity: Identity = Depends(get_current_identity)) -> dict[str, object]:
    return {
        "user": {"id": identity.id, "role": identity.role_name, "agency_id": identity.agency_id},
        "permissions": {name: guard.permission_summary(identity) for name, guard in _dashboard_guards.items()},
    }


@router.get("/metrics", tags=["system"])
def metrics(identity: Identity = Depends(get_current_identity)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not identity.is_owner:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the owner can read metrics")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
