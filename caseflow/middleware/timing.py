"""
Request timing middleware.

Every API response carries ``X-Request-ID`` (echoed from the caller when
supplied) and ``X-Request-Duration-Ms``. The access log line is tagged with
the workflow scope found in the URL (entity type / id, clock, override) and
the authenticated actor, so a slow transition can be traced to the case it
touched.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Probes hit these every few seconds
_QUIET_PATHS = frozenset({"/api/v1/health", "/api/v1/health/ready", "/api/v1/health/live"})

SLOW_THRESHOLD_MS = 1000

_SCOPE_ARGS = ("entity_type", "entity_id", "clock_id", "override_id", "coi_id", "definition_id")


def _request_scope() -> dict:
    view_args = request.view_args or {}
    scope = {k: view_args[k] for k in _SCOPE_ARGS if k in view_args}
    scope["actor_id"] = getattr(g, "current_user_id", None)
    scope["role"] = getattr(g, "current_role", None)
    return scope


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _stamp_response(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path in _QUIET_PATHS:
            return response

        extra = {
            "request_id": g.request_id,
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 1),
            **_request_scope(),
        }
        if response.status_code >= 500:
            log = logger.error
        elif duration_ms > SLOW_THRESHOLD_MS:
            log = logger.warning
        else:
            log = logger.debug
        log("%s %s -> %d (%.0fms)", request.method, request.path,
            response.status_code, duration_ms, extra=extra)
        return response
