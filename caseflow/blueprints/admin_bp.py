"""
caseflow
Admin blueprint: audit trail and scheduled jobs.

Endpoints:
    GET  /api/v1/audit                        — list / filter audit logs
    GET  /api/v1/audit/<int:log_id>           — single audit entry
    GET  /api/v1/admin/jobs                   — registered jobs and last runs
    POST  /api/v1/admin/jobs/<job_name>/run   — run a job now
    PATCH /api/v1/admin/jobs/<job_name>       — pause / resume a job ({"is_enabled": bool})
"""

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from caseflow.auth import role_required
from caseflow.blueprints import json_body, page_args
from caseflow.core.exceptions import NotFoundError, ValidationError
from caseflow.models import db
from caseflow.models.audit import AuditLog
from caseflow.services.scheduler_service import SchedulerService, get_registered_jobs

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1")


# ── Audit ────────────────────────────────────────────────────────────────────

@admin_bp.route("/audit", methods=["GET"])
@role_required(elevated=True)
def list_audit_logs():
    """
    Return paginated audit logs with optional filters.

    Query params:
        entity_type      — filter by entity type
        entity_id        — filter by entity id
        organization_id  — filter by organization
        action           — filter by action string (prefix match)
        actor            — filter by actor
        page / per_page  — pagination (default 50, max 200)
    """
    stmt = select(AuditLog)

    entity_type = request.args.get("entity_type")
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)

    organization_id = request.args.get("organization_id")
    if organization_id:
        stmt = stmt.where(AuditLog.organization_id == organization_id)

    action = request.args.get("action")
    if action:
        stmt = stmt.where(AuditLog.action.startswith(action))

    actor = request.args.get("actor")
    if actor:
        stmt = stmt.where(AuditLog.actor == actor)

    stmt = stmt.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())

    page, per_page = page_args()
    paginated = db.paginate(stmt, page=page, per_page=per_page, error_out=False)

    return jsonify({
        "audit_logs": [log.to_dict() for log in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    })


@admin_bp.route("/audit/<int:log_id>", methods=["GET"])
@role_required(elevated=True)
def get_audit_log(log_id):
    log = db.session.get(AuditLog, log_id)
    if not log:
        raise NotFoundError("AuditLog", log_id)
    return jsonify(log.to_dict())


# ── Scheduled jobs ───────────────────────────────────────────────────────────

@admin_bp.route("/admin/jobs", methods=["GET"])
@role_required(elevated=True)
def list_jobs():
    return jsonify({"jobs": SchedulerService.list_jobs()})


@admin_bp.route("/admin/jobs/<job_name>/run", methods=["POST"])
@role_required(elevated=True)
def run_job(job_name):
    if job_name not in get_registered_jobs():
        raise NotFoundError("ScheduledJob", job_name)

    kwargs = {}
    data = json_body()
    if job_name == "sla_warning_sweep" and data.get("warning_days") is not None:
        try:
            kwargs["warning_days"] = int(data["warning_days"])
        except (TypeError, ValueError):
            raise ValidationError("warning_days must be an integer")

    result = SchedulerService.run_job(job_name, **kwargs)
    status_code = 200 if result["status"] == "success" else 500
    return jsonify(result), status_code


@admin_bp.route("/admin/jobs/<job_name>", methods=["PATCH"])
@role_required(elevated=True)
def toggle_job(job_name):
    enabled = json_body().get("is_enabled")
    if not isinstance(enabled, bool):
        raise ValidationError("is_enabled must be a boolean")
    job = SchedulerService.set_enabled(job_name, enabled)
    return jsonify(job.to_dict())
