"""
Workflow & SLA analytics — read-only reporting over executions, History and
closed SLA clocks. Nothing here writes; bottleneck states are the ones with
the highest average ``duration_in_state``.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from caseflow.core.exceptions import ValidationError
from caseflow.models import db
from caseflow.models.sla import CLOCK_BREACHED, CLOCK_MET, CLOCK_PAUSED, CLOCK_RUNNING, SLAClock
from caseflow.models.workflow import WorkflowExecution, WorkflowHistory
from caseflow.utils.helpers import SECONDS_PER_DAY, as_utc, parse_datetime

logger = logging.getLogger(__name__)


def _date_range(date_from, date_to):
    start = parse_datetime(date_from) if date_from else None
    end = parse_datetime(date_to) if date_to else None
    if date_from and start is None:
        raise ValidationError("date_from must be an ISO-8601 date or datetime")
    if date_to and end is None:
        raise ValidationError("date_to must be an ISO-8601 date or datetime")
    if start and end and end < start:
        raise ValidationError("date_to must not be before date_from")
    return start, end


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def get_workflow_analytics(*, definition_id: int | None = None, entity_type: str | None = None,
                           date_from=None, date_to=None) -> dict:
    """State distribution, transition counts and average time per state."""
    start, end = _date_range(date_from, date_to)

    exec_filters = []
    if definition_id:
        exec_filters.append(WorkflowExecution.definition_id == definition_id)
    if entity_type:
        exec_filters.append(WorkflowExecution.entity_type == entity_type)
    if start:
        exec_filters.append(WorkflowExecution.created_at >= start)
    if end:
        exec_filters.append(WorkflowExecution.created_at <= end)

    distribution = db.session.execute(
        select(WorkflowExecution.current_state_code, func.count(WorkflowExecution.id))
        .where(*exec_filters)
        .group_by(WorkflowExecution.current_state_code)
        .order_by(WorkflowExecution.current_state_code)
    ).all()
    total = sum(count for _code, count in distribution)
    completed = db.session.execute(
        select(func.count(WorkflowExecution.id)).where(*exec_filters, WorkflowExecution.completed_at.isnot(None))
    ).scalar_one()

    hist_filters = [WorkflowHistory.from_state_code.isnot(None)]
    if definition_id:
        hist_filters.append(WorkflowExecution.definition_id == definition_id)
    if entity_type:
        hist_filters.append(WorkflowExecution.entity_type == entity_type)
    if start:
        hist_filters.append(WorkflowHistory.performed_at >= start)
    if end:
        hist_filters.append(WorkflowHistory.performed_at <= end)

    durations = db.session.execute(
        select(
            WorkflowHistory.from_state_code,
            func.count(WorkflowHistory.id),
            func.avg(WorkflowHistory.duration_in_state),
            func.max(WorkflowHistory.duration_in_state),
        )
        .join(WorkflowExecution, WorkflowHistory.execution_id == WorkflowExecution.id)
        .where(*hist_filters)
        .group_by(WorkflowHistory.from_state_code)
    ).all()
    per_state = [
        {
            "state": code,
            "exits": exits,
            "avg_duration_seconds": int(avg or 0),
            "avg_duration_days": round((avg or 0) / SECONDS_PER_DAY, 2),
            "max_duration_seconds": int(longest or 0),
        }
        for code, exits, avg, longest in durations
    ]
    per_state.sort(key=lambda s: s["avg_duration_seconds"], reverse=True)

    transitions = db.session.execute(
        select(WorkflowHistory.transition_code, func.count(WorkflowHistory.id))
        .join(WorkflowExecution, WorkflowHistory.execution_id == WorkflowExecution.id)
        .where(*hist_filters, WorkflowHistory.transition_code.isnot(None))
        .group_by(WorkflowHistory.transition_code)
        .order_by(func.count(WorkflowHistory.id).desc())
    ).all()

    return {
        "filters": {
            "definition_id": definition_id,
            "entity_type": entity_type,
            "date_from": start.isoformat() if start else None,
            "date_to": end.isoformat() if end else None,
        },
        "total_executions": total,
        "completed_executions": completed,
        "completion_rate": _pct(completed, total),
        "state_distribution": [
            {"state": code, "count": count, "pct": _pct(count, total)} for code, count in distribution
        ],
        "duration_in_state": per_state,
        "bottlenecks": [s["state"] for s in per_state[:3] if s["avg_duration_seconds"] > 0],
        "transition_counts": [{"transition": code, "count": count} for code, count in transitions],
    }


def get_sla_stats(*, entity_type: str | None = None, date_from=None, date_to=None) -> dict:
    """Clock counts by status, compliance, and time spent per state from closed clocks."""
    start, end = _date_range(date_from, date_to)
    stmt = select(SLAClock)
    if entity_type:
        stmt = stmt.where(SLAClock.entity_type == entity_type)
    if start:
        stmt = stmt.where(SLAClock.started_at >= start)
    if end:
        stmt = stmt.where(SLAClock.started_at <= end)
    clocks = list(db.session.execute(stmt).scalars())

    by_status = {s: 0 for s in (CLOCK_RUNNING, CLOCK_PAUSED, CLOCK_MET, CLOCK_BREACHED)}
    states: dict[str, dict] = {}
    for clock in clocks:
        by_status[clock.status] = by_status.get(clock.status, 0) + 1
        bucket = states.setdefault(clock.state_code, {
            "state": clock.state_code, "total": 0, "met": 0, "breached": 0, "open": 0, "_durations": [],
        })
        bucket["total"] += 1
        if clock.is_open:
            bucket["open"] += 1
            continue
        bucket["met" if clock.status == CLOCK_MET else "breached"] += 1
        active = (as_utc(clock.closed_at) - as_utc(clock.started_at)).total_seconds()
        bucket["_durations"].append(active - (clock.total_paused_seconds or 0))

    per_state = []
    for bucket in states.values():
        durations = bucket.pop("_durations")
        closed = bucket["met"] + bucket["breached"]
        bucket["compliance_pct"] = _pct(bucket["met"], closed)
        bucket["avg_duration_days"] = round(sum(durations) / len(durations) / SECONDS_PER_DAY, 2) if durations else None
        per_state.append(bucket)
    per_state.sort(key=lambda b: b["state"])

    closed_total = by_status[CLOCK_MET] + by_status[CLOCK_BREACHED]
    return {
        "total": len(clocks),
        "by_status": by_status,
        "open": by_status[CLOCK_RUNNING] + by_status[CLOCK_PAUSED],
        "compliance_pct": _pct(by_status[CLOCK_MET], closed_total),
        "breached_open": sum(1 for c in clocks if c.is_open and c.breached_at is not None),
        "by_state": per_state,
    }
