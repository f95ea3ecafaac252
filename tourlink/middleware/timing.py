"""
Per-request id and duration.

Every response carries X-Request-ID (echoed from the caller when supplied)
and X-Request-Duration-Ms. Slow requests and server errors are logged at
WARNING/ERROR; everything else at DEBUG.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_THRESHOLD_MS = 1000

_PROBE_PATHS = frozenset({"/api/v1/health/live", "/api/v1/health/ready"})


def _log_level(status: int, duration_ms: float) -> int:
    if status >= 500:
        return logging.ERROR
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    @app.before_request
    def _stamp_request():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_request(response):
        started = g.get("request_start")
        if started is None:
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path not in _PROBE_PATHS:
            logger.log(
                _log_level(response.status_code, duration_ms),
                "%s %s -> %d (%.0fms)",
                request.method, request.path, response.status_code, duration_ms,
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "remote_addr": request.remote_addr,
                },
            )
        return response
