from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

from agencyhub.api.errors import error_response
from agencyhub.core.config import get_settings
from agencyhub.core.context import get_request_context
from agencyhub.platform.security.context import Identity
from agencyhub.platform.security.security_log import SecurityLogger, security_logger

logger = logging.getLogger("agencyhub.request")


def create_access_token(identity: Identity, *, expires_minutes: int = 60) -> str:
    settings = get_settings()
    claims: dict[str, Any] = {
        "sub": identity.id,
        "role": identity.role_name,
        "agency_id": identity.agency_id,
        "email": identity.email,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer ") :].strip() if auth_header.startswith("Bearer ") else ""


def decode_identity(token: str) -> Identity | None:
    if not token:
        return None

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    identity = Identity.from_claims(payload)
    if not identity.id:
        return None
    return identity


def is_exempt_path(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in get_settings().rbac_exempt_prefixes)


def authentication_required_response(request: Request):  # type: ignore[no-untyped-def]
    return error_response(
        request,
        status_code=status.HTTP_401_UNAUTHORIZED,
        code="AUTHENTICATION_REQUIRED",
        message="Please sign in to continue.",
        headers={"Location": get_settings().login_path},
    )


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Resolves the staff identity from a bearer JWT onto ``request.state.identity``."""

    def __init__(self, app, security_log: SecurityLogger | None = None) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.security_log = security_log or security_logger

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.identity = None
        if is_exempt_path(request.url.path):
            return await call_next(request)

        token = bearer_token(request)
        identity = decode_identity(token)
        if identity is None:
            if token:
                context = get_request_context(request)
                self.security_log.log_authentication_failure(
                    "unknown",
                    "Invalid or expired bearer token",
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                )
            return authentication_required_response(request)

        request.state.identity = identity
        get_request_context(request).user_id = identity.id
        return await call_next(request)


def get_current_identity(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Please sign in to continue.",
            headers={"Location": get_settings().login_path},
        )
    return identity
