"""
Prometheus Metrics Middleware

Provides request and pipeline metrics for monitoring:
- HTTP request latency and count by endpoint and status
- Active request gauge
- Scrape duration and job counts per platform
- Matcher AI call latency, per-job outcomes and circuit breaker state
- Scheduler tick outcomes

Usage:
    from jobtracker.middleware.metrics import setup_metrics

    # In main.py
    app = FastAPI()
    setup_metrics(app)

Metrics Endpoint:
    GET /metrics - Prometheus-format metrics
"""

import time
import logging
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CONTENT_TYPE_LATEST,
    generate_latest,
    REGISTRY,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

logger = logging.getLogger(__name__)

# ==================== Prometheus Metrics ====================

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint", "status"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

ACTIVE_REQUESTS = Gauge(
    "http_requests_active",
    "Number of active HTTP requests",
    ["method", "endpoint"]
)

# Scraper metrics
SCRAPE_DURATION = Histogram(
    "scrape_duration_seconds",
    "Time to scrape one company",
    ["platform", "outcome"],  # outcome: success, partial, error
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

SCRAPE_JOBS = Counter(
    "scrape_jobs_total",
    "Jobs seen by the scraper",
    ["platform", "kind"]  # kind: found, added, updated, filtered, archived
)

# Matcher metrics
MATCH_CALL_LATENCY = Histogram(
    "match_ai_call_seconds",
    "Latency of one AI match call (single job or batch)",
    ["strategy"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

MATCH_RESULTS = Counter(
    "match_results_total",
    "Per-job match outcomes",
    ["status", "error_type"]
)

CIRCUIT_BREAKER_OPEN = Gauge(
    "match_circuit_breaker_open",
    "1 while the matcher circuit breaker rejects calls"
)

# Scheduler metrics
SCHEDULER_RUNS = Counter(
    "scheduler_runs_total",
    "Scheduler ticks by outcome",
    ["outcome"]  # completed, skipped_locked, skipped_running, skipped_disabled, failed
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for Prometheus metrics collection.

    Records:
    - Request latency
    - Request count by status code
    - Active request count
    """

    def __init__(self, app: FastAPI, app_name: str = "jobtracker"):
        super().__init__(app)
        self.app_name = app_name

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        endpoint = self._get_endpoint(request)
        method = request.method

        if endpoint == "/metrics":
            return await call_next(request)

        ACTIVE_REQUESTS.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status = str(response.status_code)
        except Exception as e:
            status = "500"
            logger.error(f"Request error: {e}")
            raise
        finally:
            duration = time.perf_counter() - start_time

            REQUEST_LATENCY.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).observe(duration)

            REQUEST_COUNT.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).inc()

            ACTIVE_REQUESTS.labels(
                method=method,
                endpoint=endpoint
            ).dec()

        return response

    def _get_endpoint(self, request: Request) -> str:
        """
        Get normalized endpoint path from request.

        Uses route pattern (e.g., /companies/{company_id}/refresh) instead
        of the actual path to avoid high cardinality.
        """
        for route in request.app.routes:
            match, _ = route.matches(request.scope)
            if match == Match.FULL:
                return route.path

        return request.url.path


def metrics_endpoint(request: Request) -> Response:
    """Prometheus text-format scrape endpoint."""
    return PlainTextResponse(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )


def setup_metrics(app: FastAPI) -> None:
    """
    Configure Prometheus metrics for FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(PrometheusMiddleware, app_name="jobtracker")
    app.add_route("/metrics", metrics_endpoint, methods=["GET"])

    logger.info("Prometheus metrics configured")


# ==================== Helper Functions ====================

def record_scrape(
    platform: str,
    outcome: str,
    duration: float,
    found: int = 0,
    added: int = 0,
    updated: int = 0,
    filtered: int = 0,
    archived: int = 0,
) -> None:
    """Record one company scrape (duration in seconds)."""
    platform = platform or "unknown"
    SCRAPE_DURATION.labels(platform=platform, outcome=outcome).observe(duration)
    for kind, value in (
        ("found", found),
        ("added", added),
        ("updated", updated),
        ("filtered", filtered),
        ("archived", archived),
    ):
        if value:
            SCRAPE_JOBS.labels(platform=platform, kind=kind).inc(value)


def record_match_call_latency(strategy: str, duration: float) -> None:
    MATCH_CALL_LATENCY.labels(strategy=strategy).observe(duration)


def record_match_result(status: str, error_type: str = "") -> None:
    MATCH_RESULTS.labels(status=status, error_type=error_type or "none").inc()


def update_circuit_breaker_state(is_open: bool) -> None:
    CIRCUIT_BREAKER_OPEN.set(1 if is_open else 0)


def record_scheduler_run(outcome: str) -> None:
    SCHEDULER_RUNS.labels(outcome=outcome).inc()
