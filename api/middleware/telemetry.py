"""
Telemetry Middleware
====================

Correlates every log line of a request with its request id and, for
session routes, the session id taken from the path.
"""

import re
import time
import uuid
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from observability.logging_config import bind_context, clear_context

logger = structlog.get_logger(__name__)

SESSION_PATH = re.compile(r"^/api/v1/sessions/(?P<session_id>[^/]+)")
QUIET_PATHS = frozenset({"/health", "/ready", "/live", "/metrics"})


class TelemetryMiddleware(BaseHTTPMiddleware):
    """
    Request id propagation and request logging.

    The id comes from the ``X-Request-ID`` header when the caller sends
    one. It is stored on ``request.state`` for the error handlers and
    echoed back on the response together with ``X-Response-Time-Ms``.
    Probe and scrape paths log at debug level.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        path = request.url.path

        clear_context()
        bind_context(request_id=request_id, method=request.method, path=path)
        match = SESSION_PATH.match(path)
        if match:
            bind_context(session_id=match.group("session_id"))

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", duration_ms=round((time.perf_counter() - started) * 1000, 2))
            raise
        duration_ms = round((time.perf_counter() - started) * 1000, 2)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.2f}"
        log = logger.debug if path in QUIET_PATHS else logger.info
        log("request_completed", status_code=response.status_code, duration_ms=duration_ms)
        return response
