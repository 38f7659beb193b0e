from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from agencyhub.api.errors import ApiError
from agencyhub.core.context import get_request_context
from agencyhub.core.database import apply_portal_rls_session_variables, get_db
from agencyhub.crm.models import Client, Proposal, utcnow
from agencyhub.crm.schemas import ProposalRead
from agencyhub.guards import ProposalGuard, ProposalStatus
from agencyhub.portal.delivery import build_magic_link_url, get_magic_link_delivery
from agencyhub.portal.guard import PortalAuth, PortalGuard
from agencyhub.portal.models import PortalAccessToken
from agencyhub.portal.repository import TOKEN_TYPE_ACCESS, PortalActivityRepository
from agencyhub.portal.schemas import (
    MagicLinkRequest,
    PortalMeRead,
    PortalSessionRead,
    PortalTokenLogin,
    ProposalResponse,
)

logger = logging.getLogger("agencyhub.portal")

router = APIRouter(prefix="/portal", tags=["portal"])

proposal_guard = ProposalGuard()

ACTION_LOGIN = "login"
ACTION_LOGOUT = "logout"
ACTION_VIEW_PROPOSAL = "view_proposal"
ACTION_ACCEPT_PROPOSAL = "accept_proposal"
ACTION_REJECT_PROPOSAL = "reject_proposal"


def _unauthenticated(message: str = "Not authenticated") -> ApiError:
    return ApiError(status.HTTP_401_UNAUTHORIZED, "PORTAL_UNAUTHENTICATED", message)


def _not_found(resource: str) -> ApiError:
    return ApiError(status.HTTP_404_NOT_FOUND, "NOT_FOUND", f"{resource} not found")


def get_portal_guard(db: Session = Depends(get_db)) -> PortalGuard:
    return PortalGuard(db)


def get_portal_auth(
    db: Session = Depends(get_db),
    guard: PortalGuard = Depends(get_portal_guard),
    session_token: str | None = Header(default=None, alias="X-Portal-Session"),
    access_token: str | None = Header(default=None, alias="X-Portal-Token"),
) -> PortalAuth:
    auth: PortalAuth | None = None
    if session_token:
        auth = guard.authenticate_with_session(session_token)
    elif access_token:
        auth = guard.authenticate_with_token(access_token)
    if auth is None:
        raise _unauthenticated()
    apply_portal_rls_session_variables(db, auth.client_id)
    return auth


def _start_session(
    request: Request,
    db: Session,
    guard: PortalGuard,
    auth: PortalAuth,
) -> PortalSessionRead:
    context = get_request_context(request)
    portal_session = guard.create_session(auth.access_id or "", context.ip_address, context.user_agent)
    if portal_session is None:
        raise _unauthenticated("Portal access is no longer active")

    PortalActivityRepository(db).record(
        auth.client_id,
        ACTION_LOGIN,
        access_token_id=auth.access_id,
        details={"method": auth.type.value},
        ip_address=context.ip_address,
    )
    logger.info("portal_login", extra={"client_id": auth.client_id, "auth_type": auth.type.value})
    return PortalSessionRead(
        session_token=portal_session.session_token,
        expires_at=portal_session.expires_at,
        type=auth.type.value,
        client_id=auth.client_id,
        permissions=auth.as_dict()["permissions"],
    )


@router.post("/auth/token", response_model=PortalSessionRead)
def login_with_token(
    request: Request,
    dto: PortalTokenLogin,
    db: Session = Depends(get_db),
    guard: PortalGuard = Depends(get_portal_guard),
) -> PortalSessionRead:
    auth = guard.authenticate_with_token(dto.token)
    if auth is None:
        raise _unauthenticated("Invalid or expired access token")
    return _start_session(request, db, guard, auth)


@router.post("/auth/magic-link", response_model=PortalSessionRead)
def login_with_magic_link(
    request: Request,
    dto: PortalTokenLogin,
    db: Session = Depends(get_db),
    guard: PortalGuard = Depends(get_portal_guard),
) -> PortalSessionRead:
    auth = guard.authenticate_with_magic_link(dto.token)
    if auth is None:
        raise _unauthenticated("Invalid or expired magic link")
    return _start_session(request, db, guard, auth)


@router.post("/auth/request-link")
def request_magic_link(
    dto: MagicLinkRequest,
    db: Session = Depends(get_db),
    guard: PortalGuard = Depends(get_portal_guard),
) -> dict[str, Any]:
    access = db.scalar(
        select(PortalAccessToken)
        .where(
            PortalAccessToken.email == str(dto.email),
            PortalAccessToken.token_type == TOKEN_TYPE_ACCESS,
            PortalAccessToken.is_active.is_(True),
        )
        .limit(1)
    )
    if access is not None:
        link = guard.access_tokens.create_magic_link(access.client_id, access.email)
        get_magic_link_delivery().deliver(link.email, build_magic_link_url(link.token))
        logger.info("portal_magic_link_issued", extra={"client_id": link.client_id})
    return {"message": "If an account exists with this email, a login link will be sent."}


@router.get("/me", response_model=PortalMeRead)
def portal_me(
    db: Session = Depends(get_db),
    guard: PortalGuard = Depends(get_portal_guard),
    auth: PortalAuth = Depends(get_portal_auth),
) -> PortalMeRead:
    client = db.get(Client, auth.client_id)
    return PortalMeRead(
        email=auth.email,
        client=None if client is None else {"id": client.id, "name": client.name, "email": client.email},
        permissions=guard.permission_summary(auth),
    )


@router.post("/logout")
def portal_logout(
    request: Request,
    db: Session = Depends(get_db),
    guard: PortalGuard = Depends(get_portal_guard),
    session_token: str | None = Header(default=None, alias="X-Portal-Session"),
) -> dict[str, Any]:
    terminated = False
    if session_token:
        auth = guard.authenticate_with_session(session_token)
        terminated = guard.logout(session_token)
        if auth is not None and terminated:
            PortalActivityRepository(db).record(
                auth.client_id,
                ACTION_LOGOUT,
                access_token_id=auth.access_id,
                ip_address=get_request_context(request).ip_address,
            )
    return {"terminated": terminated}


def _load_client_proposal(db: Session, guard: PortalGuard, auth: PortalAuth, proposal_id: str) -> Proposal:
    proposal = db.get(Proposal, proposal_id)
    # Drafts and other tenants' proposals are indistinguishable from missing ones.
    if proposal is None or not guard.can_access_resource(auth, proposal.client_id):
        raise _not_found("Proposal")
    if proposal.status == ProposalStatus.DRAFT:
        raise _not_found("Proposal")
    return proposal


@router.get("/proposals/{proposal_id}", response_model=ProposalRead)
def portal_get_proposal(
    proposal_id: str,
    request: Request,
    db: Session = Depends(get_db),
    guard: PortalGuard = Depends(get_portal_guard),
    auth: PortalAuth = Depends(get_portal_auth),
) -> ProposalRead:
    if not guard.can_view_proposals(auth):
        raise ApiError(status.HTTP_403_FORBIDDEN, "FORBIDDEN", "You do not have permission to view proposals.")

    proposal = _load_client_proposal(db, guard, auth, proposal_id)
    PortalActivityRepository(db).record(
        auth.client_id,
        ACTION_VIEW_PROPOSAL,
        access_token_id=auth.access_id,
        resource_type="proposal",
        resource_id=proposal.id,
        ip_address=get_request_context(request).ip_address,
    )
    if proposal.status == ProposalStatus.SENT:
        proposal.status = ProposalStatus.VIEWED.value
        db.commit()
        db.refresh(proposal)
    return ProposalRead.model_validate(proposal)


@router.post("/proposals/{proposal_id}/respond", response_model=ProposalRead)
def portal_respond_to_proposal(
    proposal_id: str,
    dto: ProposalResponse,
    request: Request,
    db: Session = Depends(get_db),
    guard: PortalGuard = Depends(get_portal_guard),
    auth: PortalAuth = Depends(get_portal_auth),
) -> ProposalRead:
    if not guard.can_view_proposals(auth):
        raise ApiError(status.HTTP_403_FORBIDDEN, "FORBIDDEN", "You do not have permission to view proposals.")

    proposal = _load_client_proposal(db, guard, auth, proposal_id)
    if not proposal_guard.can_respond(proposal):
        verb = "accepted" if dto.decision == ProposalStatus.ACCEPTED else "rejected"
        raise ApiError(status.HTTP_400_BAD_REQUEST, "VALIDATION_FAILED", f"This proposal cannot be {verb}.")

    proposal.status = dto.decision
    proposal.responded_at = utcnow()
    db.commit()
    db.refresh(proposal)

    if dto.decision == ProposalStatus.ACCEPTED:
        action, details = ACTION_ACCEPT_PROPOSAL, {"signed_name": dto.name or auth.email}
    else:
        action, details = ACTION_REJECT_PROPOSAL, {"reason": dto.reason}
    PortalActivityRepository(db).record(
        auth.client_id,
        action,
        access_token_id=auth.access_id,
        resource_type="proposal",
        resource_id=proposal.id,
        details=details,
        ip_address=get_request_context(request).ip_address,
    )
    return ProposalRead.model_validate(proposal)
