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

messages_dispatched_total = Counter(
    "messages_dispatched_total",
    "Outbound messages dispatched by channel and resulting status",
    ["channel", "status"],
)

message_dispatch_duration_seconds = Histogram(
    "message_dispatch_duration_seconds",
    "Provider call duration in seconds",
    ["channel"],
)

message_webhook_events_total = Counter(
    "message_webhook_events_total",
    "Inbound provider webhook and tracking events",
    ["channel", "event"],
)

crm_deal_transitions_total = Counter(
    "crm_deal_transitions_total",
    "Deal status transitions",
    ["status"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")
_TRACKING_RE = re.compile(r"^(/api/track/(?:open|click))/[^/]+$")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    tracking = _TRACKING_RE.match(path)
    if tracking:
        return f"{tracking.group(1)}/{{id}}"
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


def observe_message_dispatch(channel: str, status: str, duration: float | None = None) -> None:
    messages_dispatched_total.labels(channel=channel, status=status).inc()
    if duration is not None:
        message_dispatch_duration_seconds.labels(channel=channel).observe(duration)


def observe_webhook_event(channel: str, event: str) -> None:
    message_webhook_events_total.labels(channel=channel, event=event).inc()


def observe_deal_transition(status: str) -> None:
    crm_deal_transitions_total.labels(status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
