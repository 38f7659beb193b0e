from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

rbac_denials_total = Counter(
    "rbac_denials_total",
    "Requests rejected by the RBAC route filter",
    ["rule"],
)

portal_auth_total = Counter(
    "portal_auth_total",
    "Portal authentication attempts by credential type and outcome",
    ["method", "outcome"],
)

portal_cleanup_total = Counter(
    "portal_cleanup_total",
    "Portal credentials and sessions removed by the expiry cleanup",
    ["kind"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_rbac_denial(rule: str) -> None:
    rbac_denials_total.labels(rule=rule).inc()


def observe_portal_auth(method: str, success: bool) -> None:
    portal_auth_total.labels(method=method, outcome="success" if success else "failure").inc()


def observe_portal_cleanup(kind: str, count: int) -> None:
    if count > 0:
        portal_cleanup_total.labels(kind=kind).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
