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

pipeline_transitions_total = Counter(
    "pipeline_transitions_total",
    "Committed status transitions by entity type and target status",
    ["entity_type", "to_status"],
)

pipeline_conflict_retries_total = Counter(
    "pipeline_conflict_retries_total",
    "Pipeline operations retried after an optimistic concurrency conflict",
    ["operation"],
)

sequence_numbers_allocated_total = Counter(
    "sequence_numbers_allocated_total",
    "Document numbers allocated by prefix",
    ["prefix"],
)

sequence_allocation_failures_total = Counter(
    "sequence_allocation_failures_total",
    "Document number allocations that exhausted their retry budget",
    ["prefix"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


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


def observe_transition(entity_type: str, to_status: str) -> None:
    pipeline_transitions_total.labels(entity_type=entity_type, to_status=to_status).inc()


def observe_conflict_retry(operation: str) -> None:
    pipeline_conflict_retries_total.labels(operation=operation).inc()


def observe_sequence_allocated(prefix: str) -> None:
    sequence_numbers_allocated_total.labels(prefix=prefix).inc()


def observe_sequence_failure(prefix: str) -> None:
    sequence_allocation_failures_total.labels(prefix=prefix).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
