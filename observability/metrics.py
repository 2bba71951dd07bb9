"""
Prometheus Metrics
==================

Application metrics for monitoring and alerting.
"""

import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

from report_pilot.models import QuerySession

# Create a custom registry for this application
REGISTRY = CollectorRegistry()

APP_INFO = Info(
    "report_pilot",
    "Report Pilot application information",
    registry=REGISTRY,
)

# Session metrics
SESSIONS_TOTAL = Counter(
    "report_pilot_sessions_total",
    "Finished query sessions by terminal status",
    ["status"],  # succeeded, failed, abandoned
    registry=REGISTRY,
)

SESSION_FAILURES = Counter(
    "report_pilot_session_failures_total",
    "Failed sessions by failure cause",
    ["cause"],
    registry=REGISTRY,
)

SESSION_DURATION = Histogram(
    "report_pilot_session_duration_seconds",
    "Wall time from session creation to its terminal status",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY,
)

SESSION_ATTEMPTS = Histogram(
    "report_pilot_session_attempts",
    "Number of attempts per session",
    buckets=[1, 2, 3, 4, 5],
    registry=REGISTRY,
)

ATTEMPT_OUTCOMES = Counter(
    "report_pilot_attempts_total",
    "Recorded attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

PROVIDER_ATTEMPTS = Counter(
    "report_pilot_provider_attempts_total",
    "Attempts by provider and outcome",
    ["provider", "outcome"],
    registry=REGISTRY,
)

# Validation metrics
VALIDATION_REJECTIONS = Counter(
    "report_pilot_validation_rejections_total",
    "Validation rejections by violated rule",
    ["rule"],
    registry=REGISTRY,
)

# HTTP metrics
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=REGISTRY,
)

ACTIVE_SESSIONS = Gauge(
    "report_pilot_active_sessions",
    "Number of session runs currently being processed",
    registry=REGISTRY,
)


def _endpoint_label(request: Request) -> str:
    # Route templates keep session ids out of the label set.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def setup_metrics(app: FastAPI, version: str = "0.1.0", environment: str = "development") -> None:
    """
    Set up Prometheus metrics for the FastAPI application.

    Args:
        app: FastAPI application instance
        version: Reported application version
        environment: Reported deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        """Middleware to track HTTP metrics."""
        start_time = time.perf_counter()

        is_run_endpoint = request.method == "POST" and request.url.path.endswith("/run")
        if is_run_endpoint:
            ACTIVE_SESSIONS.inc()

        try:
            response = await call_next(request)
            duration = time.perf_counter() - start_time
            endpoint = _endpoint_label(request)

            HTTP_REQUESTS_TOTAL.labels(
                method=request.method,
                endpoint=endpoint,
                status=response.status_code,
            ).inc()

            HTTP_REQUEST_DURATION.labels(
                method=request.method,
                endpoint=endpoint,
            ).observe(duration)

            return response
        finally:
            if is_run_endpoint:
                ACTIVE_SESSIONS.dec()


def track_session_metrics(session: QuerySession) -> None:
    """
    Track metrics for a session that reached a terminal status.

    Args:
        session: Terminal session snapshot
    """
    if not session.status.is_terminal:
        return

    SESSIONS_TOTAL.labels(status=session.status.value).inc()
    SESSION_ATTEMPTS.observe(len(session.attempts))
    if session.completed_at is not None:
        SESSION_DURATION.observe((session.completed_at - session.created_at).total_seconds())
    if session.failure_cause is not None:
        SESSION_FAILURES.labels(cause=session.failure_cause.value).inc()

    for attempt in session.attempts:
        ATTEMPT_OUTCOMES.labels(outcome=attempt.outcome.value).inc()
        PROVIDER_ATTEMPTS.labels(provider=attempt.provider or "none", outcome=attempt.outcome.value).inc()
        if attempt.validation is not None:
            for rule in attempt.validation.rules:
                VALIDATION_REJECTIONS.labels(rule=rule).inc()


async def metrics_endpoint(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    # Handle multiprocess mode if using gunicorn
    try:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        metrics = generate_latest(registry)
    except ValueError:
        # Not in multiprocess mode
        metrics = generate_latest(REGISTRY)

    return Response(
        content=metrics,
        media_type=CONTENT_TYPE_LATEST,
    )
