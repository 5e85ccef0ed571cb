from __future__ import annotations

"""Prometheus metrics for the analysis API.

Request latency per method/path/status, plus run outcomes and the
number of upstream events consumed.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

REQUEST_LATENCY = Histogram(
    "personality_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

RUN_OUTCOMES = Counter(
    "personality_runs_total",
    "Analysis runs by tier and outcome",
    labelnames=("tier", "outcome"),
)

STREAM_EVENTS = Counter(
    "personality_stream_events_total",
    "Upstream stream events consumed, by event type",
    labelnames=("type",),
)


def sanitize_path(path: str) -> str:
    """Keep only the top-level segment so usernames never become labels."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
