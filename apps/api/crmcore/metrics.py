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

guard_denials_total = Counter(
    "crm_guard_denials_total",
    "Access-control denials by guard event type",
    ["event_type"],
)

finalization_transitions_total = Counter(
    "crm_finalization_transitions_total",
    "Company finalization state transitions",
    ["transition"],
)

bulk_items_total = Counter(
    "crm_bulk_items_total",
    "Bulk action items by operation and outcome",
    ["operation", "outcome"],
)

bulk_duration_seconds = Histogram(
    "crm_bulk_duration_seconds",
    "Bulk action duration in seconds",
    ["operation"],
)

audit_entries_written_total = Counter(
    "crm_audit_entries_written_total",
    "Audit log entries written",
    ["action"],
)

audit_write_failures_total = Counter(
    "crm_audit_write_failures_total",
    "Audit or security event writes that failed",
    ["kind"],
)

security_events_total = Counter(
    "crm_security_events_total",
    "Security events recorded by severity",
    ["severity"],
)

rate_limited_total = Counter(
    "crm_rate_limited_total",
    "Mutations rejected by the rate limiter",
    ["route_group"],
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


def route_group_for(path: str) -> str:
    """First segment after `/api/v1`, the unit for rate limit buckets and span tags."""
    parts = [part for part in path.split("/") if part]
    if len(parts) >= 3 and parts[:2] == ["api", "v1"]:
        return parts[2]
    return "api"


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


def observe_guard_denial(event_type: str) -> None:
    guard_denials_total.labels(event_type=event_type).inc()


def observe_finalization_transition(transition: str) -> None:
    finalization_transitions_total.labels(transition=transition).inc()


def observe_bulk_action(operation: str, updated: int, failed: int, duration: float) -> None:
    if updated > 0:
        bulk_items_total.labels(operation=operation, outcome="updated").inc(updated)
    if failed > 0:
        bulk_items_total.labels(operation=operation, outcome="failed").inc(failed)
    bulk_duration_seconds.labels(operation=operation).observe(duration)


def observe_audit_entry(action: str) -> None:
    audit_entries_written_total.labels(action=action).inc()


def observe_audit_write_failure(kind: str) -> None:
    audit_write_failures_total.labels(kind=kind).inc()


def observe_security_event(severity: str) -> None:
    security_events_total.labels(severity=severity).inc()


def observe_rate_limited(route_group: str) -> None:
    rate_limited_total.labels(route_group=route_group).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
