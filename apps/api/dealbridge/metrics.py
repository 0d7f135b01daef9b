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

project_numbers_allocated_total = Counter(
    "project_numbers_allocated_total",
    "Project numbers allocated from the sequence counters",
    ["department_code"],
)

project_creations_total = Counter(
    "project_creations_total",
    "Full project creation requests by outcome",
    ["outcome"],
)

accounting_stage_total = Counter(
    "accounting_stage_total",
    "Accounting project stage results",
    ["status"],
)

token_refreshes_total = Counter(
    "token_refreshes_total",
    "OAuth token refresh attempts by service and status",
    ["service", "status"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_project_number_allocated(department_code: str) -> None:
    project_numbers_allocated_total.labels(department_code=department_code).inc()


def observe_project_creation(outcome: str) -> None:
    project_creations_total.labels(outcome=outcome).inc()


def observe_accounting_stage(status: str) -> None:
    accounting_stage_total.labels(status=status).inc()


def observe_token_refresh(service: str, status: str) -> None:
    token_refreshes_total.labels(service=service, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
