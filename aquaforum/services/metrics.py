"""
Prometheus metrics for Aqua Forum.
Collected only when METRICS_ENABLED is set.
"""

import time

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from aquaforum.config import settings

REQUESTS_TOTAL = Counter(
    "aquaforum_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "aquaforum_http_request_seconds",
    "Request duration in seconds",
    ["method", "path"],
)

UPLOADS_TOTAL = Counter(
    "aquaforum_uploads_total",
    "Total photo uploads",
    ["status", "provider"],
)

TAGGING_JOBS_TOTAL = Counter(
    "aquaforum_tagging_jobs_total",
    "Tagging job attempts by outcome",
    ["outcome"],
)

TAGGING_DURATION = Histogram(
    "aquaforum_tagging_seconds",
    "Wall-clock time of one tagging attempt",
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120),
)


def enabled() -> bool:
    return settings.METRICS_ENABLED


async def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint"""
    if not enabled():
        return Response(b"metrics disabled", media_type="text/plain")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def metrics_middleware(app: FastAPI) -> None:
    if not enabled():
        return

    @app.middleware("http")
    async def _metrics(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        # route template keeps label cardinality bounded
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        REQUESTS_TOTAL.labels(method=request.method, path=path, status=str(response.status_code)).inc()
        REQUEST_DURATION.labels(method=request.method, path=path).observe(time.time() - start)
        return response


def record_upload(status: str, provider: str) -> None:
    if enabled():
        UPLOADS_TOTAL.labels(status=status, provider=provider).inc()


def record_tagging(outcome: str, seconds: float) -> None:
    if enabled():
        TAGGING_JOBS_TOTAL.labels(outcome=outcome).inc()
        TAGGING_DURATION.observe(seconds)
