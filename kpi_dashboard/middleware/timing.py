"""
Request timing for the hierarchy API.

Every response carries X-Request-Duration-Ms and X-Request-ID. Manual sync
triggers are always logged at INFO with their outcome; probes and the
sync-status endpoint that dashboards poll are not logged at all.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Polled endpoints, never logged
QUIET_PATHS = frozenset({
    "/api/v1/health",
    "/api/v1/health/ready",
    "/api/v1/health/live",
    "/api/v1/hierarchy/sync/status",
})

SYNC_TRIGGER_PATH = "/api/v1/hierarchy/sync"

# Above this a read is reported as slow; sync triggers are exempt
SLOW_READ_MS = 1000


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _stamp_and_log(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"
        response.headers["X-Request-ID"] = g.request_id

        if request.path in QUIET_PATHS:
            return response

        _log_request(response.status_code, elapsed_ms)
        return response


def _log_request(status_code: int, elapsed_ms: float) -> None:
    summary = f"{request.method} {request.path} -> {status_code} in {elapsed_ms:.0f}ms"
    extra = {
        "method": request.method,
        "path": request.path,
        "status": status_code,
        "duration_ms": round(elapsed_ms, 1),
        "request_id": g.request_id,
    }

    if status_code >= 500:
        logger.error("Request failed: %s", summary, extra=extra)
    elif request.path == SYNC_TRIGGER_PATH and request.method == "POST":
        logger.info("Manual hierarchy sync: %s", summary, extra=extra)
    elif elapsed_ms > SLOW_READ_MS:
        logger.warning("Slow hierarchy read: %s", summary, extra=extra)
    else:
        logger.debug("Request: %s", summary, extra=extra)
