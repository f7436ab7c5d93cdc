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

crm_delete_guard_blocks_total = Counter(
    "crm_delete_guard_blocks_total",
    "Deletes refused because the row is still referenced",
    ["entity"],
)

crm_bulk_rows_total = Counter(
    "crm_bulk_rows_total",
    "Rows affected by bulk operations",
    ["operation"],
)

crm_report_duration_seconds = Histogram(
    "crm_report_duration_seconds",
    "Aggregation report duration in seconds",
    ["report"],
)

auth_login_total = Counter(
    "auth_login_total",
    "Login attempts by outcome",
    ["outcome"],
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
        for attribute in ("path_format", "path"):
            value = getattr(route, attribute, None)
            if isinstance(value, str) and value:
                return _PATH_PARAM_RE.sub("{id}", value)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_delete_guard_block(entity: str) -> None:
    crm_delete_guard_blocks_total.labels(entity=entity).inc()


def observe_bulk_rows(operation: str, count: int) -> None:
    if count > 0:
        crm_bulk_rows_total.labels(operation=operation).inc(count)


def observe_report(report: str, duration: float) -> None:
    crm_report_duration_seconds.labels(report=report).observe(duration)


def observe_login(outcome: str) -> None:
    auth_login_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
