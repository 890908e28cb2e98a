"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in caseflow/__init__.py with no default limits; this module
applies granular limits per route category.

Usage:
    from caseflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"
ADMIN_LIMIT = "30/minute"


def actor_or_ip_key():
    """Key limits on the authenticated actor, falling back to the remote IP."""
    actor_id = getattr(g, "current_user_id", None)
    if actor_id:
        return f"actor:{actor_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per actor, else per remote IP):
        - Workflow / COI endpoints: 60/minute
        - SLA read endpoints:       200/minute
        - Admin (audit, jobs):      30/minute
        - Health check:             exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("workflow", "coi"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT, key_func=actor_or_ip_key)(bp)

    bp = app.blueprints.get("sla")
    if bp:
        limiter.limit(READ_LIMIT, key_func=actor_or_ip_key)(bp)

    bp = app.blueprints.get("admin")
    if bp:
        limiter.limit(ADMIN_LIMIT, key_func=actor_or_ip_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — workflow/coi: %s, sla: %s, admin: %s",
        WRITE_LIMIT, READ_LIMIT, ADMIN_LIMIT,
    )
