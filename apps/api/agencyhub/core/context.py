from __future__ import annotations

from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    ip_address: str | None
    user_agent: str | None
    user_id: str | None = None


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None:
        return request.client.host
    return None


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "context", None)
    if context is None:
        context = _build_context(request)
        request.state.context = context
    return context


def _build_context(request: Request) -> RequestContext:
    correlation_id = getattr(request.state, "correlation_id", None) or ""
    return RequestContext(
        request_id=correlation_id,
        correlation_id=correlation_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = _build_context(request)
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
