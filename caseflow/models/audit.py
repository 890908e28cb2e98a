"""
caseflow — Audit model.

Models:
    - AuditLog: immutable, append-only record of every mutating operation.
"""

import json
from datetime import UTC, datetime

from caseflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    # Workflow
    "workflow.start",
    "workflow.transition",
    "workflow.create",
    "workflow.update",
    "workflow.publish",
    "workflow.clone",
    # Conflict of interest
    "coi.declare",
    "coi.severity",
    "coi.deactivate",
    "coi.sync",
    "coi.override_create",
    "coi.override_revoke",
    # SLA
    "sla.pause",
    "sla.resume",
    "sla.extend",
    "sla.breach",
    "sla.escalation",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every mutating call.

    One row per action. ``diff_json`` carries the before/after summary.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(40), nullable=False,
        comment="REVIEW | FINDING | CAP | workflow_definition | coi | coi_override | sla_clock",
    )
    entity_id = db.Column(db.String(64), nullable=False)

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="workflow.transition | coi.override_create | sla.pause | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_role = db.Column(db.String(60), nullable=True)
    organization_id = db.Column(db.String(64), nullable=True, index=True)

    # Change payload
    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {before: {...}, after: {...}}",
    )

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "organization_id": self.organization_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str | None = "system",
    actor_role: str | None = None,
    organization_id: str | None = None,
    before: dict | None = None,
    after: dict | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so the row commits or rolls
    back together with the business change that produced it.

    ``actor_role`` falls back to the role on the request's JWT.
    """
    if actor_role is None:
        from flask import g, has_request_context
        if has_request_context():
            actor_role = getattr(g, "current_role", None)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        actor_role=actor_role,
        organization_id=organization_id,
        diff_json=json.dumps({"before": before or {}, "after": after or {}}, default=str),
    )
    if timestamp is not None:
        log.timestamp = timestamp
    db.session.add(log)
    db.session.flush()
    return log
