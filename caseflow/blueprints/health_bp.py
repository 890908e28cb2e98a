"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — static ok
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database round-trip, published workflows and
                                SLA sweep freshness

Only the database decides the status code. A missing workflow or a stale
sweep is reported as a warning so the probe does not restart pods over a
cron problem.
"""

import logging
import time

from flask import Blueprint, jsonify
from sqlalchemy import select

from caseflow.models import db
from caseflow.models.scheduling import ScheduledJob
from caseflow.models.workflow import ENTITY_TYPES, WorkflowDefinition
from caseflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

# A sweep is stale once it has missed this many of its own intervals
STALE_AFTER_INTERVALS = 3


@health_bp.route("", methods=["GET"])
def health():
    return jsonify({"status": "ok", "app": "caseflow"})


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


def _workflow_check() -> dict:
    active = set(db.session.execute(
        select(WorkflowDefinition.entity_type).where(WorkflowDefinition.is_active.is_(True))
    ).scalars())
    missing = sorted(set(ENTITY_TYPES) - active)
    if missing:
        return {"status": "warning", "missing_entity_types": missing}
    return {"status": "ok"}


def _sweep_check(now) -> dict:
    jobs = db.session.execute(select(ScheduledJob)).scalars().all()
    if not jobs:
        return {"status": "never_run"}
    stale = []
    for job in jobs:
        due = job.next_due_at()
        if not job.is_enabled or due is None:
            continue
        overdue_min = (now - due).total_seconds() / 60
        if overdue_min > job.interval_minutes * (STALE_AFTER_INTERVALS - 1):
            stale.append(job.job_name)
    failing = sorted(j.job_name for j in jobs if j.last_run_status == "failed")
    if stale or failing:
        return {"status": "warning", "stale": sorted(stale), "failing": failing}
    return {"status": "ok"}


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with database status."""
    checks = {}

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        logger.error("Health check — database failed: %s", exc)
        checks["database"] = {"status": "error", "detail": str(exc)}
        return jsonify({"status": "degraded", "checks": checks}), 503

    checks["workflows"] = _workflow_check()
    checks["sla_sweeps"] = _sweep_check(utcnow())
    return jsonify({"status": "healthy", "checks": checks}), 200
