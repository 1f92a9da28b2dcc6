"""
Per-request timing and correlation ids.

Every response carries ``X-Request-ID`` (echoed from the caller when sent)
and ``X-Request-Duration-Ms``. One access line is logged per API call:
DEBUG normally, WARNING past ``SLOW_THRESHOLD_MS``, ERROR on 5xx.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_THRESHOLD_MS = 1000

# Health checks hit these every few seconds
_QUIET_PATHS = frozenset({"/api/v1/health/live", "/api/v1/health/ready"})


def _access_context(response, elapsed_ms: float) -> dict:
    view_args = request.view_args or {}
    return {
        "request_id": g.request_id,
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": elapsed_ms,
        "remote_addr": request.remote_addr,
        "tenant_id": request.args.get("tenant_id", type=int),
        "cycle_id": view_args.get("cycle_id"),
        "user_id": request.headers.get("X-User-Id"),
    }


def init_request_timing(app: Flask):
    @app.before_request
    def _begin():
        g.started_at = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish(response):
        started = g.get("started_at")
        if started is None:
            return response

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"
        if request.path in _QUIET_PATHS:
            return response

        line = "%s %s -> %d in %.0fms"
        args = (request.method, request.path, response.status_code, elapsed_ms)
        extra = _access_context(response, elapsed_ms)
        if response.status_code >= 500:
            logger.error(line, *args, extra=extra)
        elif elapsed_ms > SLOW_THRESHOLD_MS:
            logger.warning("Slow request: " + line, *args, extra=extra)
        else:
            logger.debug(line, *args, extra=extra)
        return response
