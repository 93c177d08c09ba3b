"""Prometheus metrics for the governance gateway.

Labels are low-cardinality: outcomes, results and dependency names only,
never proposal ids, validator ids or exchange ids.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "gov_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "gov_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
VOTES_TOTAL = Counter(
    "gov_votes_total",
    "Votes received, by outcome",
    ["outcome"],
)
EXECUTIONS_TOTAL = Counter(
    "gov_executions_total",
    "Action executions, by action and result",
    ["action", "result"],
)
DEPENDENCY_FAILURES_TOTAL = Counter(
    "gov_dependency_failures_total",
    "Failed calls to external dependencies",
    ["dependency"],
)
AUDIT_APPENDS_TOTAL = Counter(
    "gov_audit_appends_total",
    "Audit log append attempts, by result",
    ["result"],
)
SESSION_EVENTS_TOTAL = Counter(
    "gov_session_events_total",
    "Verification events, by outcome",
    ["outcome"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "gov_rate_limit_reject_total",
    "Total rate-limit rejections",
    ["endpoint"],
)
PENDING_AUDIT_TASKS = Gauge(
    "gov_pending_audit_tasks",
    "Audit append tasks still in flight",
)
LOCKDOWN_ACTIVE = Gauge(
    "gov_store_lockdown_active",
    "1 while the store circuit breaker holds a lockdown window open",
    ["store"],
)


def record_vote(outcome: str) -> None:
    VOTES_TOTAL.labels(outcome=str(outcome)).inc()


def record_execution(action: str, result: str) -> None:
    EXECUTIONS_TOTAL.labels(action=str(action), result=str(result)).inc()


def record_dependency_failure(dependency: str) -> None:
    DEPENDENCY_FAILURES_TOTAL.labels(dependency=str(dependency)).inc()


def record_audit_append(result: str) -> None:
    AUDIT_APPENDS_TOTAL.labels(result=str(result)).inc()


def record_session_event(outcome: str) -> None:
    SESSION_EVENTS_TOTAL.labels(outcome=str(outcome)).inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def set_pending_audit_tasks(n: int) -> None:
    PENDING_AUDIT_TASKS.set(float(n))


def set_lockdown_active(store: str, active: bool) -> None:
    LOCKDOWN_ACTIVE.labels(store=str(store)).set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("GOV_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
