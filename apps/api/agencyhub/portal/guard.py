from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy.orm import Session

from agencyhub.crm.models import utcnow
from agencyhub.metrics import observe_portal_auth
from agencyhub.portal.models import PortalAccessToken, PortalSession
from agencyhub.portal.repository import PortalAccessRepository, PortalSessionRepository

logger = logging.getLogger("agencyhub.portal")


class PortalPermission(StrEnum):
    VIEW_INVOICES = "view_invoices"
    VIEW_PROPOSALS = "view_proposals"
    VIEW_PROJECTS = "view_projects"
    MAKE_PAYMENTS = "make_payments"
    DOWNLOAD_FILES = "download_files"
    SUBMIT_FEEDBACK = "submit_feedback"


PORTAL_PERMISSIONS = frozenset(permission.value for permission in PortalPermission)


class PortalAuthType(StrEnum):
    TOKEN = "token"
    MAGIC_LINK = "magic_link"
    SESSION = "session"


def normalize_permissions(raw: Any) -> dict[str, bool]:
    """Reduce a stored permission map to the recognised keys that are exactly ``True``."""

    if raw is None:
        return {}
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("portal_permissions_unreadable")
            return {}
    if not isinstance(raw, Mapping):
        return {}
    return {name: True for name in PORTAL_PERMISSIONS if raw.get(name) is True}


@dataclass(slots=True, frozen=True)
class PortalAuth:
    type: PortalAuthType
    client_id: str
    email: str
    permissions: dict[str, bool] = field(default_factory=dict)
    access_id: str | None = None
    session_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "client_id": self.client_id,
            "email": self.email,
            "permissions": {name: self.permissions.get(name, False) for name in sorted(PORTAL_PERMISSIONS)},
        }


def _auth_from_access(
    auth_type: PortalAuthType,
    access: PortalAccessToken,
    *,
    session_id: str | None = None,
) -> PortalAuth:
    return PortalAuth(
        type=auth_type,
        client_id=str(access.client_id),
        email=access.email,
        permissions=normalize_permissions(access.permissions),
        access_id=str(access.id),
        session_id=session_id,
    )


class PortalGuard:
    """Authentication and permission checks for client portal principals.

    Portal principals never appear in the staff user table; every check is scoped
    to the single client the credential was issued for.
    """

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.access_tokens = PortalAccessRepository(session, clock=clock)
        self.sessions = PortalSessionRepository(session, clock=clock)

    def authenticate_with_token(self, token: str) -> PortalAuth | None:
        access = self.access_tokens.validate_token(token)
        observe_portal_auth(PortalAuthType.TOKEN.value, access is not None)
        if access is None:
            logger.info("portal_auth_failed", extra={"auth_type": PortalAuthType.TOKEN.value})
            return None
        return _auth_from_access(PortalAuthType.TOKEN, access)

    def authenticate_with_magic_link(self, token: str) -> PortalAuth | None:
        access = self.access_tokens.consume_magic_link(token)
        observe_portal_auth(PortalAuthType.MAGIC_LINK.value, access is not None)
        if access is None:
            logger.info("portal_auth_failed", extra={"auth_type": PortalAuthType.MAGIC_LINK.value})
            return None
        logger.info(
            "portal_magic_link_redeemed",
            extra={"auth_type": PortalAuthType.MAGIC_LINK.value, "client_id": access.client_id},
        )
        return _auth_from_access(PortalAuthType.MAGIC_LINK, access)

    def authenticate_with_session(self, session_token: str) -> PortalAuth | None:
        result = self.sessions.validate_session(session_token)
        observe_portal_auth(PortalAuthType.SESSION.value, result is not None)
        if result is None:
            return None
        portal_session, access = result
        return _auth_from_access(PortalAuthType.SESSION, access, session_id=str(portal_session.id))

    def create_session(
        self,
        access_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> PortalSession | None:
        if not access_id or self.access_tokens.get_active(access_id) is None:
            return None
        return self.sessions.create_session(access_id, ip_address, user_agent)

    def has_permission(self, auth: PortalAuth, permission: str) -> bool:
        if permission not in PORTAL_PERMISSIONS:
            return False
        return auth.permissions.get(permission) is True

    def can_view_invoices(self, auth: PortalAuth) -> bool:
        return self.has_permission(auth, PortalPermission.VIEW_INVOICES)

    def can_view_proposals(self, auth: PortalAuth) -> bool:
        return self.has_permission(auth, PortalPermission.VIEW_PROPOSALS)

    def can_view_projects(self, auth: PortalAuth) -> bool:
        return self.has_permission(auth, PortalPermission.VIEW_PROJECTS)

    def can_make_payments(self, auth: PortalAuth) -> bool:
        return self.has_permission(auth, PortalPermission.MAKE_PAYMENTS)

    def can_download_files(self, auth: PortalAuth) -> bool:
        return self.has_permission(auth, PortalPermission.DOWNLOAD_FILES)

    def can_submit_feedback(self, auth: PortalAuth) -> bool:
        return self.has_permission(auth, PortalPermission.SUBMIT_FEEDBACK)

    def can_access_resource(self, auth: PortalAuth, resource_client_id: str | None) -> bool:
        if resource_client_id is None:
            return False
        return str(auth.client_id) == str(resource_client_id)

    def logout(self, session_token: str) -> bool:
        return self.sessions.terminate_session(session_token)

    def permission_summary(self, auth: PortalAuth) -> dict[str, bool]:
        return {
            "can_view_invoices": self.can_view_invoices(auth),
            "can_view_proposals": self.can_view_proposals(auth),
            "can_view_projects": self.can_view_projects(auth),
            "can_make_payments": self.can_make_payments(auth),
            "can_download_files": self.can_download_files(auth),
            "can_submit_feedback": self.can_submit_feedback(auth),
        }
