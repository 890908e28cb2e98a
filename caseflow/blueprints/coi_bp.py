"""
Conflict-of-interest blueprint.

Endpoints:
    GET   /api/v1/coi/check?actor_id&organization_id&entity_id
    GET   /api/v1/coi/check-team?actor_ids=a,b&organization_id&entity_id
    GET   /api/v1/coi/stats                                 (elevated)
    GET   /api/v1/coi/actors/<actor_id>/profile
    PUT   /api/v1/coi/actors/<actor_id>/profile             (elevated)
    POST  /api/v1/coi/actors/<actor_id>/sync                (elevated)
    GET   /api/v1/coi/declarations
    POST  /api/v1/coi/declarations
    PATCH /api/v1/coi/<coi_id>/severity                     (elevated)
    POST  /api/v1/coi/<coi_id>/deactivate                   (elevated)
    GET   /api/v1/coi/overrides                             (elevated)
    POST  /api/v1/coi/overrides                             (elevated)
    GET   /api/v1/coi/overrides/<override_id>               (elevated)
    POST  /api/v1/coi/overrides/<override_id>/revoke        (elevated)
"""

import logging

from flask import Blueprint, jsonify, request

from caseflow.auth import current_actor, is_elevated, login_required, role_required
from caseflow.blueprints import bool_arg, json_body, list_arg, require_fields
from caseflow.core.exceptions import ForbiddenError, ValidationError
from caseflow.services import coi_override_service, coi_service

logger = logging.getLogger(__name__)

coi_bp = Blueprint("coi", __name__, url_prefix="/api/v1/coi")


# ── Checks ───────────────────────────────────────────────────────────────────

@coi_bp.route("/check", methods=["GET"])
@login_required
def check():
    actor_id = request.args.get("actor_id")
    organization_id = request.args.get("organization_id")
    if not actor_id or not organization_id:
        raise ValidationError("actor_id and organization_id are required")
    report = coi_service.evaluate(actor_id, organization_id, entity_id=request.args.get("entity_id"))
    return jsonify(report.to_dict())


@coi_bp.route("/check-team", methods=["GET"])
@login_required
def check_team():
    actor_ids = list_arg("actor_ids")
    organization_id = request.args.get("organization_id")
    if not actor_ids or not organization_id:
        raise ValidationError("actor_ids and organization_id are required")
    return jsonify(coi_service.evaluate_team(actor_ids, organization_id, entity_id=request.args.get("entity_id")))


@coi_bp.route("/stats", methods=["GET"])
@role_required(elevated=True)
def stats():
    return jsonify(coi_service.get_coi_stats(
        actor_id=request.args.get("actor_id"),
        organization_id=request.args.get("organization_id"),
    ))


# ── Actor facts ──────────────────────────────────────────────────────────────

@coi_bp.route("/actors/<actor_id>/profile", methods=["GET"])
@login_required
def get_profile(actor_id):
    return jsonify(coi_service.get_profile(actor_id).to_dict())


@coi_bp.route("/actors/<actor_id>/profile", methods=["PUT"])
@role_required(elevated=True)
def update_profile(actor_id):
    data = json_body()
    disclosures = data.get("disclosures")
    if disclosures is not None and not isinstance(disclosures, list):
        raise ValidationError("disclosures must be a list")
    performer, _role = current_actor()
    result = coi_service.update_actor_profile(
        actor_id,
        home_organization_id=data.get("home_organization_id"),
        display_name=data.get("display_name"),
        disclosures=disclosures,
        performed_by=performer,
    )
    return jsonify(result)


@coi_bp.route("/actors/<actor_id>/sync", methods=["POST"])
@role_required(elevated=True)
def sync_actor(actor_id):
    performer, _role = current_actor()
    return jsonify(coi_service.sync_actor(actor_id, performed_by=performer))


# ── Declarations ─────────────────────────────────────────────────────────────

@coi_bp.route("/declarations", methods=["GET"])
@login_required
def list_declarations():
    rows = coi_service.list_cois(
        actor_id=request.args.get("actor_id"),
        organization_id=request.args.get("organization_id"),
        active_only=bool_arg("active_only", default=True),
    )
    return jsonify({"items": [c.to_dict() for c in rows], "total": len(rows)})


@coi_bp.route("/declarations", methods=["POST"])
@login_required
def declare():
    data = json_body()
    require_fields(data, "organization_id", "coi_type")
    performer, role = current_actor()
    actor_id = data.get("actor_id") or performer
    if actor_id != performer and not is_elevated(role):
        raise ForbiddenError(role, "declare a conflict for another actor")

    coi = coi_service.declare_coi(
        actor_id,
        str(data["organization_id"]),
        data["coi_type"],
        severity=data.get("severity"),
        description=data.get("description"),
        declared_by=performer,
        start_date=data.get("start_date"),
        end_date=data.get("end_date"),
    )
    return jsonify(coi.to_dict()), 201


@coi_bp.route("/<int:coi_id>/severity", methods=["PATCH"])
@role_required(elevated=True)
def set_severity(coi_id):
    data = json_body()
    require_fields(data, "severity")
    performer, _role = current_actor()
    return jsonify(coi_service.set_coi_severity(coi_id, data["severity"], performed_by=performer).to_dict())


@coi_bp.route("/<int:coi_id>/deactivate", methods=["POST"])
@role_required(elevated=True)
def deactivate(coi_id):
    data = json_body()
    performer, _role = current_actor()
    coi = coi_service.deactivate_coi(coi_id, reason=data.get("reason"), performed_by=performer)
    return jsonify(coi.to_dict())


# ── Overrides ────────────────────────────────────────────────────────────────

@coi_bp.route("/overrides", methods=["GET"])
@role_required(elevated=True)
def list_overrides():
    rows = coi_override_service.list_overrides(
        actor_id=request.args.get("actor_id"),
        organization_id=request.args.get("organization_id"),
        active_only=bool_arg("active_only"),
    )
    return jsonify({"items": [o.to_dict() for o in rows], "total": len(rows)})


@coi_bp.route("/overrides", methods=["POST"])
@role_required(elevated=True)
def create_override():
    data = json_body()
    require_fields(data, "actor_id", "organization_id", "justification")
    approver, _role = current_actor()
    override = coi_override_service.create_override(
        str(data["actor_id"]),
        str(data["organization_id"]),
        data["justification"],
        approver,
        expires_at=data.get("expires_at"),
        entity_id=str(data["entity_id"]) if data.get("entity_id") else None,
    )
    return jsonify(override.to_dict()), 201


@coi_bp.route("/overrides/<int:override_id>", methods=["GET"])
@role_required(elevated=True)
def get_override(override_id):
    return jsonify(coi_override_service.get_override(override_id).to_dict())


@coi_bp.route("/overrides/<int:override_id>/revoke", methods=["POST"])
@role_required(elevated=True)
def revoke_override(override_id):
    data = json_body()
    revoker, _role = current_actor()
    override = coi_override_service.revoke_override(override_id, data.get("reason"), revoker)
    return jsonify(override.to_dict())
