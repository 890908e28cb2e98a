"""
Default workflow definitions for the peer-review programme.

    seed_default_workflows()   # or: flask seed-workflows

Each definition is created through the graph store (so it passes the same
integrity checks as admin-authored graphs) and published. Entity types that
already have a definition with the same code are skipped.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from caseflow.models import db
from caseflow.models.workflow import WorkflowDefinition
from caseflow.services.graph_store import create_definition, publish_definition

logger = logging.getLogger(__name__)

ANSP_EDITORS = ["ANSP_ADMIN", "SAFETY_MANAGER", "QUALITY_MANAGER"]
REVIEW_LEADS = ["LEAD_REVIEWER", "PROGRAMME_COORDINATOR"]


CAP_WORKFLOW = {
    "code": "CAP_WORKFLOW",
    "entity_type": "CAP",
    "name": "Corrective Action Plan Workflow",
    "description": "Standard CAP lifecycle from draft through verification and closure",
    "states": [
        {"code": "DRAFT", "label_en": "Draft", "label_fr": "Brouillon", "is_initial": True},
        {"code": "SUBMITTED", "label_en": "Submitted", "label_fr": "Soumis", "default_sla_days": 7},
        {"code": "ACCEPTED", "label_en": "Accepted", "label_fr": "Accepté"},
        {"code": "REJECTED", "label_en": "Rejected", "label_fr": "Rejeté"},
        {"code": "IMPLEMENTED", "label_en": "Implemented", "label_fr": "Mis en œuvre", "default_sla_days": 14},
        {"code": "VERIFIED", "label_en": "Verified", "label_fr": "Vérifié"},
        {"code": "CLOSED", "label_en": "Closed", "label_fr": "Clôturé", "is_terminal": True},
    ],
    "transitions": [
        {"code": "SUBMIT", "from": "DRAFT", "to": "SUBMITTED", "label_en": "Submit for Review",
         "label_fr": "Soumettre pour examen", "allowed_roles": ANSP_EDITORS},
        {"code": "ACCEPT", "from": "SUBMITTED", "to": "ACCEPTED", "label_en": "Accept",
         "label_fr": "Accepter", "allowed_roles": REVIEW_LEADS},
        {"code": "REJECT", "from": "SUBMITTED", "to": "REJECTED", "label_en": "Reject",
         "label_fr": "Rejeter", "allowed_roles": REVIEW_LEADS,
         "guards": {"checks": ["comment_required"]}},
        {"code": "REVISE", "from": "REJECTED", "to": "DRAFT", "label_en": "Revise",
         "label_fr": "Réviser", "allowed_roles": ANSP_EDITORS},
        {"code": "MARK_IMPLEMENTED", "from": "ACCEPTED", "to": "IMPLEMENTED", "label_en": "Mark as Implemented",
         "label_fr": "Marquer comme mis en œuvre", "allowed_roles": ANSP_EDITORS},
        {"code": "VERIFY", "from": "IMPLEMENTED", "to": "VERIFIED", "label_en": "Verify Implementation",
         "label_fr": "Vérifier la mise en œuvre", "allowed_roles": REVIEW_LEADS},
        {"code": "REQUEST_CHANGES", "from": "IMPLEMENTED", "to": "ACCEPTED", "label_en": "Request Changes",
         "label_fr": "Demander des modifications", "allowed_roles": REVIEW_LEADS},
        {"code": "CLOSE", "from": "VERIFIED", "to": "CLOSED", "label_en": "Close CAP",
         "label_fr": "Clôturer le PAC", "allowed_roles": REVIEW_LEADS + ["SUPER_ADMIN"]},
    ],
    "escalation_rules": [
        {"state": "SUBMITTED", "name": "CAP review due soon", "trigger": "BEFORE_DUE", "threshold_days": 2,
         "notify_target": "LEAD_REVIEWER", "action": "NOTIFY"},
        {"state": "SUBMITTED", "name": "CAP review overdue", "trigger": "ON_BREACH", "threshold_days": 0,
         "notify_target": "PROGRAMME_COORDINATOR", "action": "NOTIFY", "fire_once": False,
         "repeat_interval_days": 3, "max_repeats": 3},
    ],
}

FINDING_WORKFLOW = {
    "code": "FINDING_WORKFLOW",
    "entity_type": "FINDING",
    "name": "Finding Lifecycle",
    "description": "Peer review findings from identification to verified closure",
    "states": [
        {"code": "OPEN", "label_en": "Open", "label_fr": "Ouvert", "is_initial": True},
        {"code": "IN_PROGRESS", "label_en": "In Progress", "label_fr": "En cours", "default_sla_days": 30},
        {"code": "CLOSED", "label_en": "Closed", "label_fr": "Clôturé"},
        {"code": "VERIFIED", "label_en": "Verified", "label_fr": "Vérifié", "is_terminal": True},
    ],
    "transitions": [
        {"code": "START_WORK", "from": "OPEN", "to": "IN_PROGRESS", "label_en": "Start Working",
         "label_fr": "Commencer le travail", "allowed_roles": ANSP_EDITORS},
        {"code": "CLOSE", "from": "IN_PROGRESS", "to": "CLOSED", "label_en": "Close Finding",
         "label_fr": "Clôturer la constatation", "allowed_roles": REVIEW_LEADS},
        {"code": "REOPEN", "from": "IN_PROGRESS", "to": "OPEN", "label_en": "Reopen",
         "label_fr": "Rouvrir", "allowed_roles": REVIEW_LEADS},
        {"code": "VERIFY", "from": "CLOSED", "to": "VERIFIED", "label_en": "Verify Closure",
         "label_fr": "Vérifier la clôture", "allowed_roles": REVIEW_LEADS},
        {"code": "REOPEN_FROM_CLOSED", "from": "CLOSED", "to": "IN_PROGRESS", "label_en": "Reopen",
         "label_fr": "Rouvrir", "allowed_roles": REVIEW_LEADS},
    ],
    "escalation_rules": [
        {"state": "IN_PROGRESS", "name": "Finding response due soon", "trigger": "BEFORE_DUE",
         "threshold_days": 7, "notify_target": "ANSP_ADMIN", "action": "NOTIFY"},
    ],
}

REVIEW_WORKFLOW = {
    "code": "REVIEW_WORKFLOW",
    "entity_type": "REVIEW",
    "name": "Peer Review Workflow",
    "description": "Peer review lifecycle from request through completion",
    "states": [
        {"code": "DRAFT", "label_en": "Draft", "label_fr": "Brouillon", "is_initial": True},
        {"code": "SUBMITTED", "label_en": "Submitted", "label_fr": "Soumis", "default_sla_days": 14},
        {"code": "APPROVED", "label_en": "Approved", "label_fr": "Approuvé"},
        {"code": "REJECTED", "label_en": "Rejected", "label_fr": "Rejeté"},
        {"code": "SCHEDULED", "label_en": "Scheduled", "label_fr": "Planifié"},
        {"code": "IN_PROGRESS", "label_en": "In Progress", "label_fr": "En cours"},
        {"code": "COMPLETED", "label_en": "Completed", "label_fr": "Terminé", "is_terminal": True},
        {"code": "CANCELLED", "label_en": "Cancelled", "label_fr": "Annulé", "is_terminal": True},
    ],
    "transitions": [
        {"code": "SUBMIT", "from": "DRAFT", "to": "SUBMITTED", "label_en": "Submit Review Request",
         "allowed_roles": ["ANSP_ADMIN", "PROGRAMME_COORDINATOR"]},
        {"code": "APPROVE", "from": "SUBMITTED", "to": "APPROVED", "label_en": "Approve Request",
         "allowed_roles": ["STEERING_COMMITTEE", "PROGRAMME_COORDINATOR"]},
        {"code": "REJECT", "from": "SUBMITTED", "to": "REJECTED", "label_en": "Reject Request",
         "allowed_roles": ["STEERING_COMMITTEE", "PROGRAMME_COORDINATOR"],
         "guards": {"checks": ["comment_required"]}},
        {"code": "REVISE", "from": "REJECTED", "to": "DRAFT", "label_en": "Revise Request",
         "allowed_roles": ["ANSP_ADMIN", "PROGRAMME_COORDINATOR"]},
        {"code": "SCHEDULE", "from": "APPROVED", "to": "SCHEDULED", "label_en": "Schedule Review",
         "allowed_roles": ["PROGRAMME_COORDINATOR"], "guards": {"requires_coi_clearance": True}},
        {"code": "START", "from": "SCHEDULED", "to": "IN_PROGRESS", "label_en": "Start Review",
         "allowed_roles": REVIEW_LEADS, "guards": {"requires_coi_clearance": True}},
        {"code": "COMPLETE", "from": "IN_PROGRESS", "to": "COMPLETED", "label_en": "Complete Review",
         "allowed_roles": REVIEW_LEADS},
        {"code": "CANCEL_APPROVED", "from": "APPROVED", "to": "CANCELLED", "label_en": "Cancel Review",
         "allowed_roles": ["PROGRAMME_COORDINATOR", "SUPER_ADMIN"]},
        {"code": "CANCEL_SCHEDULED", "from": "SCHEDULED", "to": "CANCELLED", "label_en": "Cancel Review",
         "allowed_roles": ["PROGRAMME_COORDINATOR", "SUPER_ADMIN"]},
    ],
    "escalation_rules": [
        {"state": "SUBMITTED", "name": "Review approval overdue", "trigger": "ON_BREACH", "threshold_days": 0,
         "notify_target": "STEERING_COMMITTEE", "action": "ESCALATE", "fire_once": False,
         "repeat_interval_days": 7, "max_repeats": 2},
    ],
}

DEFAULT_WORKFLOWS = (CAP_WORKFLOW, FINDING_WORKFLOW, REVIEW_WORKFLOW)


def seed_default_workflows(*, created_by: str = "system") -> dict:
    """Create and publish the default definitions. Idempotent."""
    summary = {"created": [], "skipped": []}
    for payload in DEFAULT_WORKFLOWS:
        exists = db.session.execute(
            select(WorkflowDefinition.id).where(
                WorkflowDefinition.entity_type == payload["entity_type"],
                WorkflowDefinition.code == payload["code"],
            )
        ).first()
        if exists:
            summary["skipped"].append(payload["code"])
            continue
        definition = create_definition(payload, created_by=created_by)
        publish_definition(definition.id, published_by=created_by)
        summary["created"].append(payload["code"])
    logger.info("Workflow seed: %d created, %d skipped", len(summary["created"]), len(summary["skipped"]))
    return summary
