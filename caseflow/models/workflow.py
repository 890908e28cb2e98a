"""
caseflow — Workflow domain models.

Models:
    - WorkflowDefinition: versioned state graph for one entity type
    - WorkflowState: a named step of a definition
    - WorkflowTransition: a role-gated edge between two states
    - EscalationRule: deadline-driven escalation attached to a state
    - WorkflowExecution: the single live state pointer for one entity
    - WorkflowHistory: append-only ledger of executed transitions
"""

from datetime import datetime, timezone

from caseflow.models import db
from caseflow.utils.helpers import iso

# ── Constants ────────────────────────────────────────────────────────────────

ENTITY_TYPES = {"REVIEW", "FINDING", "CAP"}

TRIGGER_USER = "USER"
TRIGGER_AUTOMATIC = "AUTOMATIC"
TRANSITION_TRIGGERS = {TRIGGER_USER, TRIGGER_AUTOMATIC}

ESCALATION_TRIGGERS = {"BEFORE_DUE", "ON_BREACH"}
ESCALATION_ACTIONS = {"NOTIFY", "ESCALATE"}


def _now():
    return datetime.now(timezone.utc)


class WorkflowDefinition(db.Model):
    """
    Versioned state graph for one entity type.

    Only one version per entity type is active at a time. A definition that
    any execution references is frozen; edits go to an inactive clone.
    """

    __tablename__ = "workflow_definitions"
    __table_args__ = (
        db.UniqueConstraint("entity_type", "version", name="uq_wf_def_entity_version"),
        db.Index("ix_wf_def_entity_active", "entity_type", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(60), nullable=False,
                     comment="CAP_WORKFLOW | FINDING_WORKFLOW | REVIEW_WORKFLOW | …")
    entity_type = db.Column(db.String(30), nullable=False,
                            comment="REVIEW | FINDING | CAP")
    version = db.Column(db.Integer, nullable=False, default=1)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    published_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    states = db.relationship(
        "WorkflowState", backref="definition", lazy="selectin",
        cascade="all, delete-orphan", order_by="WorkflowState.sort_order",
    )
    transitions = db.relationship(
        "WorkflowTransition", backref="definition", lazy="selectin",
        cascade="all, delete-orphan", order_by="WorkflowTransition.id",
    )
    escalation_rules = db.relationship(
        "EscalationRule", backref="definition", lazy="selectin",
        cascade="all, delete-orphan", order_by="EscalationRule.id",
    )

    def state_by_code(self, code: str):
        for state in self.states:
            if state.code == code:
                return state
        return None

    def to_dict(self, include_graph: bool = False) -> dict:
        result = {
            "id": self.id,
            "code": self.code,
            "entity_type": self.entity_type,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "published_at": iso(self.published_at),
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
        }
        if include_graph:
            result["states"] = [s.to_dict() for s in self.states]
            result["transitions"] = [t.to_dict() for t in self.transitions]
            result["escalation_rules"] = [r.to_dict() for r in self.escalation_rules]
        return result

    def __repr__(self):
        return f"<WorkflowDefinition {self.code} v{self.version} active={self.is_active}>"


class WorkflowState(db.Model):
    """A step in a definition. Exactly one per definition is initial."""

    __tablename__ = "workflow_states"
    __table_args__ = (
        db.UniqueConstraint("definition_id", "code", name="uq_wf_state_def_code"),
    )

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    code = db.Column(db.String(40), nullable=False)
    label_en = db.Column(db.String(120), nullable=False, default="")
    label_fr = db.Column(db.String(120), nullable=False, default="")
    is_initial = db.Column(db.Boolean, nullable=False, default=False)
    is_terminal = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    default_sla_days = db.Column(db.Integer, nullable=True,
                                 comment="Days allowed in this state; NULL = no SLA clock")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "label_en": self.label_en,
            "label_fr": self.label_fr,
            "is_initial": self.is_initial,
            "is_terminal": self.is_terminal,
            "sort_order": self.sort_order,
            "default_sla_days": self.default_sla_days,
        }

    def __repr__(self):
        return f"<WorkflowState {self.code}>"


class WorkflowTransition(db.Model):
    """
    Directed edge ``from_state → to_state``.

    ``allowed_roles`` empty means any role may fire it. ``guards`` carries
    ``{"requires_coi_clearance": bool, "checks": ["no_open_findings", …]}``.
    """

    __tablename__ = "workflow_transitions"
    __table_args__ = (
        db.UniqueConstraint("definition_id", "from_state_id", "code", name="uq_wf_transition_from_code"),
    )

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_state_id = db.Column(
        db.Integer, db.ForeignKey("workflow_states.id", ondelete="CASCADE"), nullable=False,
    )
    to_state_id = db.Column(
        db.Integer, db.ForeignKey("workflow_states.id", ondelete="CASCADE"), nullable=False,
    )
    code = db.Column(db.String(60), nullable=False)
    label_en = db.Column(db.String(120), nullable=False, default="")
    label_fr = db.Column(db.String(120), nullable=False, default="")
    trigger = db.Column(db.String(20), nullable=False, default=TRIGGER_USER,
                        comment="USER | AUTOMATIC")
    allowed_roles = db.Column(db.JSON, nullable=False, default=list)
    guards = db.Column(db.JSON, nullable=False, default=dict)

    from_state = db.relationship("WorkflowState", foreign_keys=[from_state_id], lazy="joined")
    to_state = db.relationship("WorkflowState", foreign_keys=[to_state_id], lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "from_state": self.from_state.code if self.from_state else None,
            "to_state": self.to_state.code if self.to_state else None,
            "label_en": self.label_en,
            "label_fr": self.label_fr,
            "trigger": self.trigger,
            "allowed_roles": list(self.allowed_roles or []),
            "guards": dict(self.guards or {}),
        }

    def __repr__(self):
        return f"<WorkflowTransition {self.code}>"


class EscalationRule(db.Model):
    """
    Escalation attached to a state's SLA clock.

    BEFORE_DUE fires once remaining time drops to ``threshold_days``;
    ON_BREACH fires when the deadline has passed. ``fire_once`` rules fire a
    single time per clock; others re-fire every ``repeat_interval_days``.
    """

    __tablename__ = "escalation_rules"

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    state_id = db.Column(
        db.Integer, db.ForeignKey("workflow_states.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False, default="")
    trigger = db.Column(db.String(20), nullable=False, default="BEFORE_DUE",
                        comment="BEFORE_DUE | ON_BREACH")
    threshold_days = db.Column(db.Integer, nullable=False, default=0,
                               comment="BEFORE_DUE: fire when remaining days <= threshold")
    notify_target = db.Column(db.String(150), nullable=False, default="",
                              comment="Role or user identifier that receives the alert")
    action = db.Column(db.String(20), nullable=False, default="NOTIFY",
                       comment="NOTIFY | ESCALATE")
    fire_once = db.Column(db.Boolean, nullable=False, default=True)
    repeat_interval_days = db.Column(db.Integer, nullable=True)
    max_repeats = db.Column(db.Integer, nullable=True,
                            comment="Cap on firings per clock for repeating rules; NULL = unbounded")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    state = db.relationship("WorkflowState", lazy="joined")

    @property
    def threshold_key(self) -> str:
        return f"rule:{self.id}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.code if self.state else None,
            "name": self.name,
            "trigger": self.trigger,
            "threshold_days": self.threshold_days,
            "notify_target": self.notify_target,
            "action": self.action,
            "fire_once": self.fire_once,
            "repeat_interval_days": self.repeat_interval_days,
            "max_repeats": self.max_repeats,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<EscalationRule {self.id}: {self.trigger} {self.threshold_days}d -> {self.notify_target}>"


class WorkflowExecution(db.Model):
    """
    One live instance per business entity.

    ``version`` is the optimistic-concurrency stamp: every state change is a
    compare-and-swap on (id, version, current_state_code).
    """

    __tablename__ = "workflow_executions"
    __table_args__ = (
        db.UniqueConstraint("entity_type", "entity_id", name="uq_wf_execution_entity"),
        db.Index("ix_wf_execution_state", "definition_id", "current_state_code"),
    )

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id"), nullable=False, index=True,
    )
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    organization_id = db.Column(db.String(64), nullable=True, index=True,
                                comment="Owning organization; consulted by the COI gate")
    current_state_code = db.Column(db.String(40), nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    definition = db.relationship("WorkflowDefinition", lazy="joined")
    history = db.relationship(
        "WorkflowHistory", backref="execution", lazy="dynamic",
        order_by="WorkflowHistory.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "definition_id": self.definition_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "organization_id": self.organization_id,
            "current_state": self.current_state_code,
            "version": self.version,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "completed_at": iso(self.completed_at),
        }

    def __repr__(self):
        return f"<WorkflowExecution {self.entity_type}/{self.entity_id} @ {self.current_state_code}>"


class WorkflowHistory(db.Model):
    """
    Append-only transition ledger. Never updated after insert.

    ``duration_in_state`` is the number of seconds spent in ``from_state_code``,
    computed at write time.
    """

    __tablename__ = "workflow_history"
    __table_args__ = (
        db.Index("ix_wf_history_execution", "execution_id", "performed_at"),
        db.Index("ix_wf_history_from_state", "from_state_code"),
    )

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer, db.ForeignKey("workflow_executions.id"), nullable=False,
    )
    from_state_code = db.Column(db.String(40), nullable=True)
    to_state_code = db.Column(db.String(40), nullable=False)
    transition_code = db.Column(db.String(60), nullable=True)
    trigger = db.Column(db.String(20), nullable=False, default=TRIGGER_USER)
    performed_by = db.Column(db.String(150), nullable=False, default="system")
    performer_role = db.Column(db.String(60), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    performed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    duration_in_state = db.Column(db.Integer, nullable=True,
                                  comment="Seconds spent in from_state_code")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "from_state": self.from_state_code,
            "to_state": self.to_state_code,
            "transition_code": self.transition_code,
            "trigger": self.trigger,
            "performed_by": self.performed_by,
            "performer_role": self.performer_role,
            "comment": self.comment,
            "metadata": dict(self.meta or {}),
            "performed_at": iso(self.performed_at),
            "duration_in_state": self.duration_in_state,
        }

    def __repr__(self):
        return f"<WorkflowHistory {self.id}: {self.from_state_code} -> {self.to_state_code}>"
