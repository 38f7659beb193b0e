"""Route-level role checks applied after authentication and before any router.

Decisions are made by :func:`evaluate_route_access`, a pure function of the
identity and the request path; :class:`RBACMiddleware` turns a denial into an
error envelope and records the security trail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from agencyhub.api.errors import error_response
from agencyhub.core.auth import authentication_required_response, is_exempt_path
from agencyhub.core.context import get_request_context
from agencyhub.metrics import observe_rbac_denial
from agencyhub.otel import annotate_current_span
from agencyhub.platform.security.context import AGENCY_BOUND_ROLES, Identity, Role
from agencyhub.platform.security.security_log import SecurityLogger, security_logger

logger = logging.getLogger("agencyhub.security")

FINANCIAL_ROUTES = (
    "/invoices",
    "/quotes",
    "/billing",
    "/payments",
    "/reports/financial",
)

ADMIN_ROUTES = (
    "/admin",
    "/settings",
    "/users",
    "/agencies",
)

RULE_ALLOWED = "allowed"
RULE_UNAUTHENTICATED = "unauthenticated"
RULE_NO_ROLE = "no_role"
RULE_FINANCIAL = "financial_route"
RULE_ADMIN = "admin_route"
RULE_NO_AGENCY = "no_agency"


@dataclass(slots=True, frozen=True)
class RouteDecision:
    allowed: bool
    rule: str
    status_code: int = status.HTTP_200_OK
    code: str | None = None
    message: str | None = None
    # Set only for violations that belong in the security audit trail.
    violation_reason: str | None = None


ALLOW = RouteDecision(allowed=True, rule=RULE_ALLOWED)


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path.startswith(prefix) for prefix in prefixes)


def evaluate_route_access(identity: Identity | None, path: str) -> RouteDecision:
    if identity is None:
        return RouteDecision(
            allowed=False,
            rule=RULE_UNAUTHENTICATED,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="AUTHENTICATION_REQUIRED",
            message="Please sign in to continue.",
        )

    role = identity.role
    if role is None:
        return RouteDecision(
            allowed=False,
            rule=RULE_NO_ROLE,
            status_code=status.HTTP_403_FORBIDDEN,
            code="ROLE_NOT_ASSIGNED",
            message="Your account has no role assigned. Please contact the administrator.",
        )

    if role is Role.END_CLIENT and _matches(path, FINANCIAL_ROUTES):
        return RouteDecision(
            allowed=False,
            rule=RULE_FINANCIAL,
            status_code=status.HTTP_403_FORBIDDEN,
            code="FORBIDDEN",
            message="You do not have permission to access financial features.",
            violation_reason="End Client attempted to access financial route",
        )

    if role is not Role.OWNER and _matches(path, ADMIN_ROUTES):
        return RouteDecision(
            allowed=False,
            rule=RULE_ADMIN,
            status_code=status.HTTP_403_FORBIDDEN,
            code="FORBIDDEN",
            message="You do not have permission to access admin features.",
            violation_reason=f"{role.value} user attempted to access admin route",
        )

    if role in AGENCY_BOUND_ROLES and not identity.agency_id:
        contact = "your account manager" if role is Role.DIRECT_CLIENT else "the administrator"
        return RouteDecision(
            allowed=False,
            rule=RULE_NO_AGENCY,
            status_code=status.HTTP_403_FORBIDDEN,
            code="AGENCY_NOT_ASSIGNED",
            message=f"Your account is not assigned to an agency. Please contact {contact}.",
        )

    return ALLOW


class RBACMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, security_log: SecurityLogger | None = None) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.security_log = security_log or security_logger

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        path = request.url.path
        if is_exempt_path(path):
            return await call_next(request)

        identity: Identity | None = getattr(request.state, "identity", None)
        decision = evaluate_route_access(identity, path)
        annotate_current_span(**{"rbac.rule": decision.rule, "rbac.allowed": decision.allowed})
        if decision.allowed:
            return await call_next(request)

        observe_rbac_denial(decision.rule)
        if identity is None:
            logger.warning("rbac_identity_missing", extra={"path": path})
            return authentication_required_response(request)

        self._record(request, identity, path, decision)
        return error_response(
            request,
            status_code=decision.status_code,
            code=decision.code or "FORBIDDEN",
            message=decision.message or "Forbidden",
        )

    def _record(self, request: Request, identity: Identity, path: str, decision: RouteDecision) -> None:
        if decision.violation_reason is not None:
            context = get_request_context(request)
            self.security_log.log_access_denied(
                identity,
                path,
                decision.violation_reason,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
        elif decision.rule == RULE_NO_ROLE:
            logger.error(
                "User %s has no role assigned",
                identity.email or identity.id,
                extra={**identity.as_log_fields(), "path": path, "rule": decision.rule},
            )
        elif decision.rule == RULE_NO_AGENCY:
            logger.warning(
                "%s user %s has no agency_id assigned",
                identity.role_name,
                identity.email or identity.id,
                extra={**identity.as_log_fields(), "path": path, "rule": decision.rule},
            )
