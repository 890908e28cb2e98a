"""
Workflow blueprint — executions, transitions and definition authoring.

Endpoints:
    POST /api/v1/workflow/<entity_type>/<entity_id>/start
    GET  /api/v1/workflow/<entity_type>/<entity_id>/transitions
    POST /api/v1/workflow/<entity_type>/<entity_id>/transitions
    GET  /api/v1/workflow/<entity_type>/<entity_id>/history
    GET  /api/v1/workflow/<entity_type>/<entity_id>/state

    GET  /api/v1/workflow/definitions                     (elevated)
    POST /api/v1/workflow/definitions                     (elevated)
    GET  /api/v1/workflow/definitions/<id>                (elevated)
    PUT  /api/v1/workflow/definitions/<id>                (elevated)
    POST /api/v1/workflow/definitions/<id>/validate       (elevated)
    POST /api/v1/workflow/definitions/<id>/publish        (elevated)
    POST /api/v1/workflow/definitions/<id>/clone          (elevated)
    GET  /api/v1/workflow/analytics                       (elevated)

The performer of a transition is always the token's subject and role.
"""

import logging

from flask import Blueprint, jsonify, request

from caseflow.auth import current_actor, login_required, role_required
from caseflow.blueprints import bool_arg, entity_type_arg, json_body, require_fields
from caseflow.core.exceptions import ValidationError
from caseflow.services import analytics, graph_store, sla_service
from caseflow.services import workflow_engine as engine

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/workflow")


# ── Executions ───────────────────────────────────────────────────────────────

@workflow_bp.route("/<entity_type>/<entity_id>/start", methods=["POST"])
@login_required
def start(entity_type, entity_id):
    data = json_body()
    actor_id, role = current_actor()
    execution, created = engine.start_execution(
        entity_type_arg(entity_type), entity_id,
        organization_id=data.get("organization_id"),
        performed_by=actor_id,
        performer_role=role,
    )
    return jsonify({"execution": execution.to_dict(), "created": created}), 201 if created else 200


@workflow_bp.route("/<entity_type>/<entity_id>/transitions", methods=["GET"])
@login_required
def available_transitions(entity_type, entity_id):
    actor_id, role = current_actor()
    transitions = engine.get_available_transitions(
        entity_type_arg(entity_type), entity_id, role, actor_id=actor_id,
    )
    return jsonify({"transitions": [t.to_dict() for t in transitions]})


@workflow_bp.route("/<entity_type>/<entity_id>/transitions", methods=["POST"])
@login_required
def execute(entity_type, entity_id):
    data = json_body()
    require_fields(data, "transition_code")
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be a JSON object")
    expected_version = data.get("expected_version")
    if expected_version is not None:
        if isinstance(expected_version, bool):
            raise ValidationError("expected_version must be an integer")
        try:
            expected_version = int(expected_version)
        except (TypeError, ValueError):
            raise ValidationError("expected_version must be an integer")

    actor_id, role = current_actor()
    result = engine.execute_transition(
        entity_type_arg(entity_type), entity_id, data["transition_code"],
        performed_by=actor_id,
        performer_role=role,
        comment=data.get("comment"),
        metadata=metadata,
        expected_version=expected_version,
    )
    return jsonify(result.to_dict())


@workflow_bp.route("/<entity_type>/<entity_id>/history", methods=["GET"])
@login_required
def history(entity_type, entity_id):
    rows = engine.get_history(entity_type_arg(entity_type), entity_id)
    return jsonify({"history": [h.to_dict() for h in rows], "total": len(rows)})


@workflow_bp.route("/<entity_type>/<entity_id>/state", methods=["GET"])
@login_required
def current_state(entity_type, entity_id):
    entity_type = entity_type_arg(entity_type)
    execution = engine.get_execution(entity_type, entity_id)
    state = engine.get_current_state(entity_type, entity_id)
    return jsonify({
        "execution": execution.to_dict(),
        "state": state.to_dict(),
        "sla": sla_service.get_current_clock(entity_type, entity_id),
    })


# ── Definitions ──────────────────────────────────────────────────────────────

@workflow_bp.route("/definitions", methods=["GET"])
@role_required(elevated=True)
def list_definitions():
    entity_type = request.args.get("entity_type")
    active_only = bool_arg("active_only")
    rows = graph_store.list_definitions(entity_type.upper() if entity_type else None, active_only)
    return jsonify({"definitions": [d.to_dict() for d in rows]})


@workflow_bp.route("/definitions", methods=["POST"])
@role_required(elevated=True)
def create_definition():
    actor_id, _role = current_actor()
    definition = graph_store.create_definition(json_body(), created_by=actor_id)
    return jsonify(definition.to_dict(include_graph=True)), 201


@workflow_bp.route("/definitions/<int:definition_id>", methods=["GET"])
@role_required(elevated=True)
def get_definition(definition_id):
    definition = graph_store.get_definition_record(definition_id)
    return jsonify(definition.to_dict(include_graph=True))


@workflow_bp.route("/definitions/<int:definition_id>", methods=["PUT"])
@role_required(elevated=True)
def update_definition(definition_id):
    actor_id, _role = current_actor()
    definition = graph_store.update_definition(definition_id, json_body(), updated_by=actor_id)
    return jsonify(definition.to_dict(include_graph=True))


@workflow_bp.route("/definitions/<int:definition_id>/validate", methods=["POST"])
@role_required(elevated=True)
def validate_definition(definition_id):
    problems = graph_store.validate_definition(definition_id)
    return jsonify({"definition_id": definition_id, "valid": not problems, "problems": problems})


@workflow_bp.route("/definitions/<int:definition_id>/publish", methods=["POST"])
@role_required(elevated=True)
def publish_definition(definition_id):
    actor_id, _role = current_actor()
    definition = graph_store.publish_definition(definition_id, published_by=actor_id)
    return jsonify(definition.to_dict())


@workflow_bp.route("/definitions/<int:definition_id>/clone", methods=["POST"])
@role_required(elevated=True)
def clone_definition(definition_id):
    actor_id, _role = current_actor()
    clone = graph_store.clone_definition(definition_id, cloned_by=actor_id)
    return jsonify(clone.to_dict(include_graph=True)), 201


# ── Analytics ────────────────────────────────────────────────────────────────

@workflow_bp.route("/analytics", methods=["GET"])
@role_required(elevated=True)
def workflow_analytics():
    entity_type = request.args.get("entity_type")
    report = analytics.get_workflow_analytics(
        definition_id=request.args.get("definition_id", type=int) or request.args.get("workflow_id", type=int),
        entity_type=entity_type_arg(entity_type) if entity_type else None,
        date_from=request.args.get("date_from"),
        date_to=request.args.get("date_to"),
    )
    return jsonify(report)
