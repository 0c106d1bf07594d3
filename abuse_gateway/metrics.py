"""Prometheus metrics for the abuse gateway.

Metrics goals:
- low-cardinality labels (never the client identity)
- request volume/latency, gate rejections, alerts, store failures
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "abuse_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "abuse_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
GATE_REJECTIONS_TOTAL = Counter(
    "abuse_gate_rejections_total",
    "Requests rejected by a gate",
    ["outcome"],
)
ALERTS_TOTAL = Counter(
    "abuse_security_alerts_total",
    "Security alerts raised by gates",
    ["category", "severity"],
)
STORE_ERRORS_TOTAL = Counter(
    "abuse_state_store_errors_total",
    "State store failures surfaced as server errors",
)


UNMATCHED_ROUTE = "unmatched"
_KNOWN_METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})


def record_rejection(outcome: str) -> None:
    GATE_REJECTIONS_TOTAL.labels(outcome=str(outcome)).inc()


def record_alert(category: str, severity: str) -> None:
    ALERTS_TOTAL.labels(category=str(category), severity=str(severity)).inc()


def record_store_error() -> None:
    STORE_ERRORS_TOTAL.inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("ABUSE_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            # Unmatched paths share one label so clients cannot mint series.
            route_path = getattr(route, "path", None) or UNMATCHED_ROUTE
            method = request.method if request.method in _KNOWN_METHODS else "OTHER"
            HTTP_REQUESTS_TOTAL.labels(method=method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
