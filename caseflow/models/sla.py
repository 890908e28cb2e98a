"""
caseflow — SLA clock models.

Models:
    - SLAClock: deadline timer for one entity's stay in one state
    - SLAEscalationMark: "already escalated at threshold X" per clock
    - EscalationEvent: outbox row consumed by the notification service
"""

from datetime import datetime, timezone

from caseflow.models import db
from caseflow.utils.helpers import iso

# ── Constants ────────────────────────────────────────────────────────────────

CLOCK_RUNNING = "RUNNING"
CLOCK_PAUSED = "PAUSED"
CLOCK_MET = "MET"
CLOCK_BREACHED = "BREACHED"

CLOCK_STATUSES = {CLOCK_RUNNING, CLOCK_PAUSED, CLOCK_MET, CLOCK_BREACHED}
OPEN_CLOCK_STATUSES = {CLOCK_RUNNING, CLOCK_PAUSED}


def _now():
    return datetime.now(timezone.utc)


def open_key_for(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}:{entity_id}"


class SLAClock(db.Model):
    """
    One deadline for one (entity_type, entity_id, state).

    ``due_at`` is always the effective deadline: resuming a paused clock
    shifts it forward by the paused interval, extending adds days.
    ``open_key`` is set while the clock is RUNNING or PAUSED and cleared on
    close; its unique index keeps at most one open clock per entity.
    """

    __tablename__ = "sla_clocks"
    __table_args__ = (
        db.Index("ix_sla_clock_entity", "entity_type", "entity_id"),
        db.Index("ix_sla_clock_status_due", "status", "due_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer, db.ForeignKey("workflow_executions.id"), nullable=True, index=True,
    )
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    state_code = db.Column(db.String(40), nullable=False)
    target_days = db.Column(db.Integer, nullable=False)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    due_at = db.Column(db.DateTime(timezone=True), nullable=False)
    paused_at = db.Column(db.DateTime(timezone=True), nullable=True)
    total_paused_seconds = db.Column(db.Integer, nullable=False, default=0)
    extended_days = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default=CLOCK_RUNNING,
                       comment="RUNNING | PAUSED | MET | BREACHED")
    breached_at = db.Column(db.DateTime(timezone=True), nullable=True,
                            comment="Stamped by the sweep when the deadline passes in-state")
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    open_key = db.Column(db.String(120), nullable=True, unique=True)

    marks = db.relationship(
        "SLAEscalationMark", backref="clock", lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_CLOCK_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "state_code": self.state_code,
            "target_days": self.target_days,
            "started_at": iso(self.started_at),
            "due_at": iso(self.due_at),
            "paused_at": iso(self.paused_at),
            "total_paused_seconds": self.total_paused_seconds,
            "extended_days": self.extended_days,
            "status": self.status,
            "breached_at": iso(self.breached_at),
            "closed_at": iso(self.closed_at),
        }

    def __repr__(self):
        return f"<SLAClock {self.id}: {self.entity_type}/{self.entity_id}@{self.state_code} [{self.status}]>"


class SLAEscalationMark(db.Model):
    """
    Idempotency record for escalations.

    ``threshold_key`` is ``rule:<id>`` for escalation rules and ``warn:<n>d``
    for approaching-breach warnings.
    """

    __tablename__ = "sla_escalation_marks"
    __table_args__ = (
        db.UniqueConstraint("clock_id", "threshold_key", name="uq_sla_mark_clock_threshold"),
    )

    id = db.Column(db.Integer, primary_key=True)
    clock_id = db.Column(
        db.Integer, db.ForeignKey("sla_clocks.id", ondelete="CASCADE"), nullable=False,
    )
    threshold_key = db.Column(db.String(60), nullable=False)
    fire_count = db.Column(db.Integer, nullable=False, default=1)
    first_fired_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    last_fired_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "clock_id": self.clock_id,
            "threshold_key": self.threshold_key,
            "fire_count": self.fire_count,
            "first_fired_at": iso(self.first_fired_at),
            "last_fired_at": iso(self.last_fired_at),
        }


class EscalationEvent(db.Model):
    """Fired escalation awaiting delivery by the notification service."""

    __tablename__ = "escalation_events"
    __table_args__ = (
        db.Index("ix_escalation_event_pending", "dispatched_at", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    clock_id = db.Column(
        db.Integer, db.ForeignKey("sla_clocks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    rule_id = db.Column(
        db.Integer, db.ForeignKey("escalation_rules.id", ondelete="SET NULL"), nullable=True,
    )
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    state_code = db.Column(db.String(40), nullable=False)
    trigger = db.Column(db.String(20), nullable=False,
                        comment="BEFORE_DUE | ON_BREACH | WARNING")
    action = db.Column(db.String(20), nullable=False, default="NOTIFY")
    notify_target = db.Column(db.String(150), nullable=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "clock_id": self.clock_id,
            "rule_id": self.rule_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "state_code": self.state_code,
            "trigger": self.trigger,
            "action": self.action,
            "notify_target": self.notify_target,
            "payload": dict(self.payload or {}),
            "created_at": iso(self.created_at),
            "dispatched_at": iso(self.dispatched_at),
        }

    def __repr__(self):
        return f"<EscalationEvent {self.id}: {self.trigger} clock={self.clock_id}>"
