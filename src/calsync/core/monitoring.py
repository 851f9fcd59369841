"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_sync_run(): Context manager recording sync run count and duration
- record_sync_items() / record_webhook_renewal(): per-item counters
- init_sentry(): Initialize Sentry with config-aware before_send callback
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "sync_runs_total",
    "Total orchestrator runs",
    ["provider_type", "status"],
)

sync_run_duration_seconds = Histogram(
    "sync_run_duration_seconds",
    "Orchestrator run duration in seconds",
    ["provider_type"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

sync_items_total = Counter(
    "sync_items_total",
    "Events processed by the pull and push phases",
    ["phase", "outcome"],
)

webhook_renewals_total = Counter(
    "webhook_renewals_total",
    "Push-notification subscription renewals",
    ["status"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        # Use the route path pattern if available to bound label cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sync Metrics Helpers ─────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(provider_type: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks orchestrator run metrics.

    Usage:
        async with track_sync_run("google-calendar") as tracker:
            result = await ...
            tracker["status"] = "completed" if result.success else "failed"

    The status defaults to "completed"; an exception escaping the block is
    recorded as "error" and re-raised.
    """
    tracker: dict[str, Any] = {"status": "completed"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["status"] = "error"
        raise
    finally:
        sync_runs_total.labels(
            provider_type=provider_type,
            status=tracker["status"],
        ).inc()
        sync_run_duration_seconds.labels(
            provider_type=provider_type,
        ).observe(time.perf_counter() - start_time)


def record_sync_items(phase: str, succeeded: int, failed: int) -> None:
    """Increment per-item counters for one phase of a run."""
    if succeeded:
        sync_items_total.labels(phase=phase, outcome="success").inc(succeeded)
    if failed:
        sync_items_total.labels(phase=phase, outcome="error").inc(failed)


def record_webhook_renewal(status: str) -> None:
    """Increment the renewal counter (renewed, failed, dropped)."""
    webhook_renewals_total.labels(status=status).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with sync-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Promote the structlog config_id field to a searchable tag."""
        config_id = event.get("extra", {}).get("config_id")
        if config_id:
            event.setdefault("tags", {})["sync_config_id"] = config_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
