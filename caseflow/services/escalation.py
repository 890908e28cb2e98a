"""
Escalation Service — fires per-state escalation rules against SLA clocks.

Every firing writes an ``EscalationEvent`` (the outbox the notification
service drains), bumps the clock's ``SLAEscalationMark`` for the threshold
and appends an ``sla.escalation`` audit row, all in the caller's transaction.
The mark makes re-running a sweep safe: a one-time rule never fires twice
for the same clock.

Usage:
    from caseflow.services.escalation import process_escalations
    summary = process_escalations()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select

from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.sla import CLOCK_RUNNING, EscalationEvent, SLAClock, SLAEscalationMark
from caseflow.models.workflow import EscalationRule, WorkflowExecution, WorkflowState
from caseflow.services.sla_service import remaining_seconds, running_clocks, warning_key
from caseflow.utils.helpers import SECONDS_PER_DAY, as_utc, iso, utcnow

logger = logging.getLogger(__name__)

TRIGGER_BEFORE_DUE = "BEFORE_DUE"
TRIGGER_ON_BREACH = "ON_BREACH"
TRIGGER_WARNING = "WARNING"


# ═════════════════════════════════════════════════════════════════════════════
# Rule lookup & dedup
# ═════════════════════════════════════════════════════════════════════════════

def rules_for_clock(clock: SLAClock, trigger: str | None = None) -> list[EscalationRule]:
    """Active rules attached to the clock's state in the execution's definition."""
    if clock.execution_id is None:
        return []
    execution = db.session.get(WorkflowExecution, clock.execution_id)
    if execution is None:
        return []
    stmt = (
        select(EscalationRule)
        .join(WorkflowState, EscalationRule.state_id == WorkflowState.id)
        .where(
            EscalationRule.definition_id == execution.definition_id,
            WorkflowState.code == clock.state_code,
            EscalationRule.is_active.is_(True),
        )
        .order_by(EscalationRule.id)
    )
    if trigger:
        stmt = stmt.where(EscalationRule.trigger == trigger)
    return list(db.session.execute(stmt).scalars())


def _mark_for(clock: SLAClock, key: str) -> SLAEscalationMark | None:
    return db.session.execute(
        select(SLAEscalationMark).where(
            SLAEscalationMark.clock_id == clock.id,
            SLAEscalationMark.threshold_key == key,
        )
    ).scalar_one_or_none()


def _may_refire(rule: EscalationRule, mark: SLAEscalationMark | None, now) -> bool:
    if mark is None:
        return True
    if rule.fire_once:
        return False
    if rule.max_repeats is not None and mark.fire_count >= rule.max_repeats:
        return False
    interval = timedelta(days=rule.repeat_interval_days or 1)
    return now - as_utc(mark.last_fired_at) >= interval


def _threshold_reached(rule: EscalationRule, clock: SLAClock, now) -> bool:
    remaining = remaining_seconds(clock, now)
    threshold = (rule.threshold_days or 0) * SECONDS_PER_DAY
    if rule.trigger == TRIGGER_BEFORE_DUE:
        return remaining <= threshold
    if rule.trigger == TRIGGER_ON_BREACH:
        # threshold_days counts days past the deadline
        return remaining < 0 and -remaining >= threshold
    return False


# ═════════════════════════════════════════════════════════════════════════════
# Firing
# ═════════════════════════════════════════════════════════════════════════════

def _fire(clock: SLAClock, *, trigger: str, threshold_key: str, now,
          rule: EscalationRule | None = None, payload: dict | None = None) -> EscalationEvent:
    mark = _mark_for(clock, threshold_key)
    if mark is None:
        mark = SLAEscalationMark(
            clock_id=clock.id,
            threshold_key=threshold_key,
            fire_count=1,
            first_fired_at=now,
            last_fired_at=now,
        )
        db.session.add(mark)
    else:
        mark.fire_count = (mark.fire_count or 0) + 1
        mark.last_fired_at = now

    event = EscalationEvent(
        clock_id=clock.id,
        rule_id=rule.id if rule else None,
        entity_type=clock.entity_type,
        entity_id=clock.entity_id,
        state_code=clock.state_code,
        trigger=trigger,
        action=rule.action if rule else "NOTIFY",
        notify_target=rule.notify_target if rule else None,
        payload={
            "rule": rule.name if rule else None,
            "due_at": iso(clock.due_at),
            "remaining_seconds": remaining_seconds(clock, now),
            "fire_count": mark.fire_count,
            **(payload or {}),
        },
        created_at=now,
    )
    db.session.add(event)
    db.session.flush()

    write_audit(
        entity_type="sla_clock",
        entity_id=clock.id,
        action="sla.escalation",
        before={"threshold_key": threshold_key, "fire_count": mark.fire_count - 1},
        after={"threshold_key": threshold_key, "fire_count": mark.fire_count,
               "event_id": event.id, "trigger": trigger},
        timestamp=now,
    )
    logger.info("Escalation %s fired for clock %d (%s)", threshold_key, clock.id, trigger,
                extra={"clock_id": clock.id, "entity_type": clock.entity_type, "entity_id": clock.entity_id})
    return event


def fire_breach_escalations(clock: SLAClock, *, now=None, at_close: bool = False) -> list[EscalationEvent]:
    """
    Fire ON_BREACH rules that have not fired yet for this clock. No commit.

    From the sweep a rule waits until the clock is ``threshold_days`` past
    its deadline. A late close fires every unfired rule at once, since the
    clock will never be evaluated again.
    """
    now = now or utcnow()
    events = []
    for rule in rules_for_clock(clock, TRIGGER_ON_BREACH):
        if _mark_for(clock, rule.threshold_key) is not None:
            continue
        if not at_close and not _threshold_reached(rule, clock, now):
            continue
        events.append(_fire(clock, trigger=TRIGGER_ON_BREACH, threshold_key=rule.threshold_key,
                            rule=rule, now=now))
    return events


def fire_warning(clock: SLAClock, warning_days: int, *, now=None) -> EscalationEvent | None:
    """Record an approaching-breach warning once per (clock, window). No commit."""
    now = now or utcnow()
    key = warning_key(warning_days)
    if _mark_for(clock, key) is not None:
        return None
    return _fire(clock, trigger=TRIGGER_WARNING, threshold_key=key, now=now,
                 payload={"warning_days": warning_days})


def escalate_clock(clock: SLAClock, *, now=None) -> list[EscalationEvent]:
    """Fire every rule on one clock whose threshold is reached. No commit."""
    now = now or utcnow()
    events = []
    for rule in rules_for_clock(clock):
        if not _threshold_reached(rule, clock, now):
            continue
        if not _may_refire(rule, _mark_for(clock, rule.threshold_key), now):
            continue
        events.append(_fire(clock, trigger=rule.trigger, threshold_key=rule.threshold_key,
                            rule=rule, now=now))
    return events


def process_escalations(*, now=None) -> dict:
    """Evaluate rules against every RUNNING clock; commits per clock."""
    now = now or utcnow()
    result = {"clocks_checked": 0, "events_created": 0, "errors": 0}
    for clock_id in [c.id for c in running_clocks()]:
        result["clocks_checked"] += 1
        try:
            clock = db.session.get(SLAClock, clock_id)
            if clock is None or clock.status != CLOCK_RUNNING:
                continue
            events = escalate_clock(clock, now=now)
            db.session.commit()
            result["events_created"] += len(events)
        except Exception:
            db.session.rollback()
            result["errors"] += 1
            logger.exception("Escalation check failed for clock %d", clock_id, extra={"clock_id": clock_id})
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Outbox
# ═════════════════════════════════════════════════════════════════════════════

def list_events(*, entity_type: str | None = None, entity_id: str | None = None,
                pending_only: bool = False, limit: int = 200) -> list[EscalationEvent]:
    stmt = select(EscalationEvent).order_by(EscalationEvent.created_at.desc(), EscalationEvent.id.desc())
    if entity_type:
        stmt = stmt.where(EscalationEvent.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(EscalationEvent.entity_id == str(entity_id))
    if pending_only:
        stmt = stmt.where(EscalationEvent.dispatched_at.is_(None))
    return list(db.session.execute(stmt.limit(limit)).scalars())


def mark_dispatched(event_ids: list[int], *, now=None) -> int:
    """Called by the notification service once events are delivered."""
    now = now or utcnow()
    events = db.session.execute(
        select(EscalationEvent).where(EscalationEvent.id.in_(event_ids), EscalationEvent.dispatched_at.is_(None))
    ).scalars().all()
    for event in events:
        event.dispatched_at = now
    db.session.commit()
    return len(events)
