from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agencyhub.context import get_correlation_id


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "VALIDATION_FAILED",
    status.HTTP_401_UNAUTHORIZED: "AUTHENTICATION_REQUIRED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_409_CONFLICT: "CONFLICT",
    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: "VALIDATION_FAILED",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "VALIDATION_FAILED",
}


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id or None,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__, headers=dict(headers or {}))


class ApiError(HTTPException):
    """HTTPException carrying an explicit envelope code."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        *,
        details: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=message, headers=dict(headers) if headers else None)
        self.code = code
        self.details = details


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc, ApiError):
        code, details = exc.code, exc.details
    else:
        code, details = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR"), None
    message = exc.detail if isinstance(exc.detail, str) else code.replace("_", " ").capitalize()
    if details is None and not isinstance(exc.detail, str):
        details = exc.detail
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="VALIDATION_FAILED",
        message="Request validation failed",
        details=[{"loc": list(error.get("loc", ())), "msg": error.get("msg")} for error in exc.errors()],
    )
