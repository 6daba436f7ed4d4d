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

leads_ingested_total = Counter(
    "leads_ingested_total",
    "Total processed form submissions by outcome",
    ["outcome"],
)

automation_runs_total = Counter(
    "automation_runs_total",
    "Total automation runs by terminal state",
    ["state"],
)

automation_run_duration_seconds = Histogram(
    "automation_run_duration_seconds",
    "Automation run duration in seconds",
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Total automation node executions by node type and status",
    ["node_type", "status"],
)

automation_delayed_steps_total = Counter(
    "automation_delayed_steps_total",
    "Total delayed automation steps by transition",
    ["transition"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_ingested(outcome: str) -> None:
    leads_ingested_total.labels(outcome=outcome).inc()


def observe_automation_run(state: str, duration: float) -> None:
    automation_runs_total.labels(state=state).inc()
    automation_run_duration_seconds.observe(duration)


def observe_automation_action(node_type: str, status: str) -> None:
    automation_actions_total.labels(node_type=node_type, status=status).inc()


def observe_delayed_step(transition: str) -> None:
    automation_delayed_steps_total.labels(transition=transition).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
