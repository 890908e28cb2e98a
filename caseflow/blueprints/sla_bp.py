"""
SLA blueprint.

Endpoints:
    GET  /api/v1/sla/<entity_type>/<entity_id>/current
    GET  /api/v1/sla/<entity_type>/<entity_id>/history
    GET  /api/v1/sla/clocks/<clock_id>
    GET  /api/v1/sla/approaching-breaches?warning_days=    (elevated)
    POST /api/v1/sla/clocks/<clock_id>/pause               (elevated)
    POST /api/v1/sla/clocks/<clock_id>/resume              (elevated)
    POST /api/v1/sla/clocks/<clock_id>/extend              (elevated)
    GET  /api/v1/sla/stats                                 (elevated)
    GET  /api/v1/sla/escalations                           (elevated)
    POST /api/v1/sla/escalations/dispatched                (elevated)
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from caseflow.auth import current_actor, login_required, role_required
from caseflow.blueprints import bool_arg, entity_type_arg, json_body, require_fields
from caseflow.core.exceptions import ValidationError
from caseflow.services import analytics, escalation, sla_service

logger = logging.getLogger(__name__)

sla_bp = Blueprint("sla", __name__, url_prefix="/api/v1/sla")


@sla_bp.route("/<entity_type>/<entity_id>/current", methods=["GET"])
@login_required
def current(entity_type, entity_id):
    return jsonify({"clock": sla_service.get_current_clock(entity_type_arg(entity_type), entity_id)})


@sla_bp.route("/<entity_type>/<entity_id>/history", methods=["GET"])
@login_required
def history(entity_type, entity_id):
    clocks = sla_service.get_clock_history(entity_type_arg(entity_type), entity_id)
    return jsonify({"clocks": [sla_service.clock_status(c) for c in clocks], "total": len(clocks)})


@sla_bp.route("/clocks/<int:clock_id>", methods=["GET"])
@login_required
def get_clock(clock_id):
    clock = sla_service.get_clock(clock_id)
    data = sla_service.clock_status(clock)
    data["marks"] = [m.to_dict() for m in clock.marks]
    return jsonify(data)


@sla_bp.route("/approaching-breaches", methods=["GET"])
@role_required(elevated=True)
def approaching_breaches():
    raw = request.args.get("warning_days")
    if raw is None:
        warning_days = current_app.config.get("SLA_DEFAULT_WARNING_DAYS", 3)
    else:
        try:
            warning_days = int(raw)
        except ValueError:
            raise ValidationError("warning_days must be an integer")
    clocks = sla_service.get_approaching_breaches(warning_days, include_warned=bool_arg("include_warned"))
    return jsonify({"warning_days": warning_days, "clocks": clocks, "total": len(clocks)})


@sla_bp.route("/clocks/<int:clock_id>/pause", methods=["POST"])
@role_required(elevated=True)
def pause(clock_id):
    data = json_body()
    actor_id, _role = current_actor()
    clock = sla_service.pause_clock(clock_id, performed_by=actor_id, reason=data.get("reason"))
    return jsonify(sla_service.clock_status(clock))


@sla_bp.route("/clocks/<int:clock_id>/resume", methods=["POST"])
@role_required(elevated=True)
def resume(clock_id):
    actor_id, _role = current_actor()
    clock = sla_service.resume_clock(clock_id, performed_by=actor_id)
    return jsonify(sla_service.clock_status(clock))


@sla_bp.route("/clocks/<int:clock_id>/extend", methods=["POST"])
@role_required(elevated=True)
def extend(clock_id):
    data = json_body()
    require_fields(data, "additional_days")
    actor_id, _role = current_actor()
    clock = sla_service.extend_clock(
        clock_id, data["additional_days"], performed_by=actor_id, reason=data.get("reason"),
    )
    return jsonify(sla_service.clock_status(clock))


@sla_bp.route("/stats", methods=["GET"])
@role_required(elevated=True)
def stats():
    entity_type = request.args.get("entity_type")
    return jsonify(analytics.get_sla_stats(
        entity_type=entity_type_arg(entity_type) if entity_type else None,
        date_from=request.args.get("date_from"),
        date_to=request.args.get("date_to"),
    ))


@sla_bp.route("/escalations", methods=["GET"])
@role_required(elevated=True)
def escalations():
    entity_type = request.args.get("entity_type")
    events = escalation.list_events(
        entity_type=entity_type_arg(entity_type) if entity_type else None,
        entity_id=request.args.get("entity_id"),
        pending_only=bool_arg("pending_only"),
    )
    return jsonify({"items": [e.to_dict() for e in events], "total": len(events)})


@sla_bp.route("/escalations/dispatched", methods=["POST"])
@role_required(elevated=True)
def escalations_dispatched():
    data = json_body()
    event_ids = data.get("event_ids")
    if not isinstance(event_ids, list) or not all(isinstance(i, int) for i in event_ids):
        raise ValidationError("event_ids must be a list of integers")
    return jsonify({"dispatched": escalation.mark_dispatched(event_ids)})
