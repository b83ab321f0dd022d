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

sales_jobs_total = Counter(
    "sales_jobs_total",
    "Total background sweep jobs by status",
    ["job_type", "status"],
)

sales_job_duration_seconds = Histogram(
    "sales_job_duration_seconds",
    "Background sweep job duration in seconds",
    ["job_type"],
)

sales_stage_moves_total = Counter(
    "sales_stage_moves_total",
    "Pipeline stage move requests by stage class and outcome",
    ["stage_class", "outcome"],
)

sales_tasks_auto_returned_total = Counter(
    "sales_tasks_auto_returned_total",
    "Confirmation tasks returned to the queue after their claim expired",
)

sales_mrr_payments_confirmed_total = Counter(
    "sales_mrr_payments_confirmed_total",
    "Confirmed MRR payments",
)

sales_consistency_violations_total = Counter(
    "sales_consistency_violations_total",
    "Consistency violations by kind",
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
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_job(job_type: str, status: str, duration: float) -> None:
    sales_jobs_total.labels(job_type=job_type, status=status).inc()
    sales_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_stage_move(stage_class: str, outcome: str) -> None:
    sales_stage_moves_total.labels(stage_class=stage_class, outcome=outcome).inc()


def observe_tasks_auto_returned(count: int = 1) -> None:
    if count > 0:
        sales_tasks_auto_returned_total.inc(count)


def observe_mrr_payment_confirmed() -> None:
    sales_mrr_payments_confirmed_total.inc()


def observe_consistency_violation(kind: str) -> None:
    sales_consistency_violations_total.labels(kind=kind).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
