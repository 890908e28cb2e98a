"""
SLA Clock Service — deadline timers bound to an entity's stay in one state.

Clock lifecycle:
    RUNNING → PAUSED → RUNNING → MET | BREACHED

``due_at`` always holds the effective deadline. Resuming shifts it forward by
the paused interval and extending adds whole days, so "remaining time" is
``due_at - now`` for a running clock and ``due_at - paused_at`` for a paused
one.

The engine opens and closes clocks inside its own transaction
(``commit=False``); pause/resume/extend are administrator calls and commit.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select

from caseflow.core.exceptions import ClockStateError, NotFoundError, ValidationError
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.sla import (
    CLOCK_BREACHED,
    CLOCK_MET,
    CLOCK_PAUSED,
    CLOCK_RUNNING,
    SLAClock,
    SLAEscalationMark,
    open_key_for,
)
from caseflow.utils.helpers import SECONDS_PER_DAY, as_utc, iso, utcnow

logger = logging.getLogger(__name__)


def warning_key(days: int) -> str:
    return f"warn:{days}d"


# ═════════════════════════════════════════════════════════════════════════════
# Time arithmetic
# ═════════════════════════════════════════════════════════════════════════════

def effective_due_at(clock: SLAClock, now=None):
    """Deadline as of ``now``; a paused clock's deadline moves with the pause."""
    now = now or utcnow()
    due = as_utc(clock.due_at)
    if clock.status == CLOCK_PAUSED and clock.paused_at is not None:
        due = due + (now - as_utc(clock.paused_at))
    return due


def remaining_seconds(clock: SLAClock, now=None) -> int:
    """Seconds left before the deadline; negative once overdue."""
    now = now or utcnow()
    if clock.status == CLOCK_PAUSED and clock.paused_at is not None:
        return int((as_utc(clock.due_at) - as_utc(clock.paused_at)).total_seconds())
    if not clock.is_open:
        end = as_utc(clock.closed_at) or now
        return int((as_utc(clock.due_at) - end).total_seconds())
    return int((as_utc(clock.due_at) - now).total_seconds())


def clock_status(clock: SLAClock, now=None) -> dict:
    now = now or utcnow()
    remaining = remaining_seconds(clock, now)
    total = clock.target_days * SECONDS_PER_DAY + (clock.extended_days or 0) * SECONDS_PER_DAY
    elapsed = total - remaining
    data = clock.to_dict()
    data.update({
        "effective_due_at": iso(effective_due_at(clock, now)) if clock.is_open else iso(clock.due_at),
        "remaining_seconds": remaining,
        "remaining_days": round(remaining / SECONDS_PER_DAY, 2),
        "percent_elapsed": round(min(max(elapsed / total * 100, 0), 999), 1) if total else 100.0,
        "is_overdue": remaining < 0,
    })
    return data


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def get_clock(clock_id: int) -> SLAClock:
    clock = db.session.get(SLAClock, clock_id)
    if clock is None:
        raise NotFoundError(resource="SLAClock", resource_id=clock_id)
    return clock


def find_open_clock(entity_type: str, entity_id: str) -> SLAClock | None:
    return db.session.execute(
        select(SLAClock).where(SLAClock.open_key == open_key_for(entity_type, entity_id))
    ).scalar_one_or_none()


def get_current_clock(entity_type: str, entity_id: str, *, now=None) -> dict | None:
    clock = find_open_clock(entity_type, str(entity_id))
    return clock_status(clock, now) if clock else None


def get_clock_history(entity_type: str, entity_id: str) -> list[SLAClock]:
    return list(db.session.execute(
        select(SLAClock)
        .where(SLAClock.entity_type == entity_type, SLAClock.entity_id == str(entity_id))
        .order_by(SLAClock.started_at, SLAClock.id)
    ).scalars())


def running_clocks() -> list[SLAClock]:
    return list(db.session.execute(
        select(SLAClock).where(SLAClock.status == CLOCK_RUNNING).order_by(SLAClock.due_at, SLAClock.id)
    ).scalars())


def get_approaching_breaches(warning_days: int, *, now=None, include_warned: bool = False) -> list[dict]:
    """
    RUNNING clocks whose remaining time is within ``warning_days``.

    Overdue clocks are included. Clocks already warned for this threshold
    (``warn:<n>d`` mark) are left out unless ``include_warned``.
    """
    if warning_days is None or int(warning_days) < 0:
        raise ValidationError("warning_days must be zero or a positive integer")
    warning_days = int(warning_days)
    now = now or utcnow()
    window = warning_days * SECONDS_PER_DAY
    key = warning_key(warning_days)

    results = []
    for clock in running_clocks():
        if remaining_seconds(clock, now) > window:
            continue
        if not include_warned and any(m.threshold_key == key for m in clock.marks):
            continue
        results.append(clock_status(clock, now))
    results.sort(key=lambda c: c["remaining_seconds"])
    return results


# ═════════════════════════════════════════════════════════════════════════════
# Open / close (engine-driven)
# ═════════════════════════════════════════════════════════════════════════════

def open_clock(entity_type: str, entity_id: str, state, *, execution_id: int | None = None,
               now=None, commit: bool = False) -> SLAClock | None:
    """
    Start a clock for ``state`` if it defines an SLA.

    ``state`` is any object with ``code`` and ``default_sla_days``. A clock
    already open for the same state is returned unchanged; one open for a
    different state is closed first.
    """
    days = getattr(state, "default_sla_days", None)
    if not days or days <= 0:
        return None
    now = now or utcnow()
    entity_id = str(entity_id)

    existing = find_open_clock(entity_type, entity_id)
    if existing is not None:
        if existing.state_code == state.code:
            return existing
        close_clock(entity_type, entity_id, now=now, commit=False)

    clock = SLAClock(
        execution_id=execution_id,
        entity_type=entity_type,
        entity_id=entity_id,
        state_code=state.code,
        target_days=days,
        started_at=now,
        due_at=now + timedelta(days=days),
        total_paused_seconds=0,
        extended_days=0,
        status=CLOCK_RUNNING,
        open_key=open_key_for(entity_type, entity_id),
    )
    db.session.add(clock)
    db.session.flush()
    logger.info("SLA clock %d opened for %s/%s@%s, due %s", clock.id, entity_type, entity_id, state.code,
                iso(clock.due_at), extra={"clock_id": clock.id, "entity_type": entity_type, "entity_id": entity_id})
    if commit:
        db.session.commit()
    return clock


def close_clock(entity_type: str, entity_id: str, *, now=None, commit: bool = True) -> SLAClock | None:
    """
    Close the open clock for an entity: MET if the effective deadline has not
    passed, else BREACHED. Returns None when nothing is open, so closing
    twice has no further effect.
    """
    from caseflow.services.escalation import fire_breach_escalations

    now = now or utcnow()
    clock = find_open_clock(entity_type, str(entity_id))
    if clock is None:
        return None

    due = effective_due_at(clock, now)
    if clock.status == CLOCK_PAUSED and clock.paused_at is not None:
        clock.total_paused_seconds = (clock.total_paused_seconds or 0) + int(
            (now - as_utc(clock.paused_at)).total_seconds()
        )
        clock.due_at = due
        clock.paused_at = None

    breached = clock.breached_at is not None or now > due
    clock.status = CLOCK_BREACHED if breached else CLOCK_MET
    if breached and clock.breached_at is None:
        clock.breached_at = due
    clock.closed_at = now
    clock.open_key = None
    db.session.flush()

    if breached:
        fire_breach_escalations(clock, now=now, at_close=True)
    logger.info("SLA clock %d closed as %s", clock.id, clock.status,
                extra={"clock_id": clock.id, "entity_type": entity_type, "entity_id": str(entity_id)})
    if commit:
        db.session.commit()
    return clock


# ═════════════════════════════════════════════════════════════════════════════
# Administrative operations
# ═════════════════════════════════════════════════════════════════════════════

def pause_clock(clock_id: int, *, performed_by: str | None = None, reason: str | None = None,
                now=None) -> SLAClock:
    now = now or utcnow()
    clock = get_clock(clock_id)
    if clock.status != CLOCK_RUNNING:
        raise ClockStateError(clock.id, clock.status, "pause")

    before = clock.to_dict()
    clock.status = CLOCK_PAUSED
    clock.paused_at = now
    write_audit(
        entity_type="sla_clock",
        entity_id=clock.id,
        action="sla.pause",
        actor=performed_by,
        before=before,
        after={**clock.to_dict(), "reason": reason},
    )
    db.session.commit()
    logger.info("SLA clock %d paused", clock.id, extra={"clock_id": clock.id})
    return clock


def resume_clock(clock_id: int, *, performed_by: str | None = None, now=None) -> SLAClock:
    now = now or utcnow()
    clock = get_clock(clock_id)
    if clock.status != CLOCK_PAUSED:
        raise ClockStateError(clock.id, clock.status, "resume")

    before = clock.to_dict()
    paused_for = now - as_utc(clock.paused_at)
    clock.due_at = as_utc(clock.due_at) + paused_for
    clock.total_paused_seconds = (clock.total_paused_seconds or 0) + int(paused_for.total_seconds())
    clock.paused_at = None
    clock.status = CLOCK_RUNNING
    write_audit(
        entity_type="sla_clock",
        entity_id=clock.id,
        action="sla.resume",
        actor=performed_by,
        before=before,
        after=clock.to_dict(),
    )
    db.session.commit()
    logger.info("SLA clock %d resumed after %ds", clock.id, int(paused_for.total_seconds()),
                extra={"clock_id": clock.id})
    return clock


def extend_clock(clock_id: int, additional_days: int, *, performed_by: str | None = None,
                 reason: str | None = None, now=None) -> SLAClock:
    now = now or utcnow()
    try:
        additional_days = int(additional_days)
    except (TypeError, ValueError):
        raise ValidationError("additional_days must be an integer")
    if additional_days < 1:
        raise ValidationError("additional_days must be at least 1")

    clock = get_clock(clock_id)
    if not clock.is_open:
        raise ClockStateError(clock.id, clock.status, "extend")

    before = clock.to_dict()
    clock.due_at = as_utc(clock.due_at) + timedelta(days=additional_days)
    clock.extended_days = (clock.extended_days or 0) + additional_days
    if clock.breached_at is not None and effective_due_at(clock, now) > now:
        clock.breached_at = None
    write_audit(
        entity_type="sla_clock",
        entity_id=clock.id,
        action="sla.extend",
        actor=performed_by,
        before=before,
        after={**clock.to_dict(), "additional_days": additional_days, "reason": reason},
    )
    db.session.commit()
    logger.info("SLA clock %d extended by %d day(s)", clock.id, additional_days, extra={"clock_id": clock.id})
    return clock


# ═════════════════════════════════════════════════════════════════════════════
# Breach sweep
# ═════════════════════════════════════════════════════════════════════════════

def detect_breaches(*, now=None) -> dict:
    """
    Stamp ``breached_at`` on overdue RUNNING clocks and fire their ON_BREACH
    rules. The clock stays open until its state is exited.

    Each clock commits on its own; a failure is logged and the clock is
    picked up again on the next run.
    """
    from caseflow.services.escalation import fire_breach_escalations

    now = now or utcnow()
    result = {"checked": 0, "breached": 0, "escalations": 0, "errors": 0}
    for clock_id in [c.id for c in running_clocks()]:
        result["checked"] += 1
        try:
            clock = db.session.get(SLAClock, clock_id)
            if clock is None or clock.status != CLOCK_RUNNING or clock.breached_at is not None:
                continue
            if remaining_seconds(clock, now) >= 0:
                continue
            clock.breached_at = as_utc(clock.due_at)
            write_audit(
                entity_type="sla_clock",
                entity_id=clock.id,
                action="sla.breach",
                before={"breached_at": None},
                after={"breached_at": iso(clock.breached_at), "state_code": clock.state_code},
                timestamp=now,
            )
            events = fire_breach_escalations(clock, now=now)
            db.session.commit()
            result["breached"] += 1
            result["escalations"] += len(events)
            logger.warning("SLA breached: clock %d (%s/%s@%s)", clock.id, clock.entity_type, clock.entity_id,
                           clock.state_code, extra={"clock_id": clock.id, "entity_type": clock.entity_type,
                                                    "entity_id": clock.entity_id})
        except Exception:
            db.session.rollback()
            result["errors"] += 1
            logger.exception("Breach detection failed for clock %d", clock_id, extra={"clock_id": clock_id})
    return result


def get_marks(clock_id: int) -> list[SLAEscalationMark]:
    return list(db.session.execute(
        select(SLAEscalationMark).where(SLAEscalationMark.clock_id == clock_id).order_by(SLAEscalationMark.id)
    ).scalars())
