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

crm_gateway_requests_total = Counter(
    "crm_gateway_requests_total",
    "Total backend gateway calls by outcome",
    ["entity_type", "operation", "outcome"],
)

crm_gateway_request_duration_seconds = Histogram(
    "crm_gateway_request_duration_seconds",
    "Backend gateway call duration in seconds",
    ["entity_type", "operation"],
)

crm_cache_fetch_total = Counter(
    "crm_cache_fetch_total",
    "Entity cache fetch attempts by result",
    ["entity_type", "result"],
)

crm_cache_mutations_total = Counter(
    "crm_cache_mutations_total",
    "Entity cache mutations by outcome",
    ["entity_type", "operation", "outcome"],
)

crm_import_rows_total = Counter(
    "crm_import_rows_total",
    "Bulk import rows by outcome",
    ["entity_type", "outcome"],
)

crm_ledger_writes_total = Counter(
    "crm_ledger_writes_total",
    "Local ledger writes by storage key and operation",
    ["storage_key", "operation"],
)


_INT_RE = re.compile(r"/\d+\b")
_HEX_ID_RE = re.compile(r"/[0-9a-fA-F]{24}\b")
_PATH_PARAM_RE = re.compile(r"\{(?!entity_type\})[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_object_ids = _HEX_ID_RE.sub("/{id}", path)
    return _INT_RE.sub("/{id}", without_object_ids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_gateway_call(entity_type: str, operation: str, outcome: str, duration: float) -> None:
    crm_gateway_requests_total.labels(entity_type=entity_type, operation=operation, outcome=outcome).inc()
    crm_gateway_request_duration_seconds.labels(entity_type=entity_type, operation=operation).observe(duration)


def observe_cache_fetch(entity_type: str, result: str) -> None:
    crm_cache_fetch_total.labels(entity_type=entity_type, result=result).inc()


def observe_cache_mutation(entity_type: str, operation: str, outcome: str) -> None:
    crm_cache_mutations_total.labels(entity_type=entity_type, operation=operation, outcome=outcome).inc()


def observe_import_rows(entity_type: str, outcome: str, count: int = 1) -> None:
    if count > 0:
        crm_import_rows_total.labels(entity_type=entity_type, outcome=outcome).inc(count)


def observe_ledger_write(storage_key: str, operation: str) -> None:
    crm_ledger_writes_total.labels(storage_key=storage_key, operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
