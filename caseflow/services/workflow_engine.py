"""
Workflow Engine — executions, available transitions and the atomic apply.

Usage:
    from caseflow.services import workflow_engine as engine

    engine.start_execution("CAP", "cap-17", organization_id="ORG-4", performed_by="u1")
    result = engine.execute_transition(
        "CAP", "cap-17", "SUBMIT", performed_by="u1", performer_role="ANSP_ADMIN",
    )
    result.new_state  # "SUBMITTED"

Transition legality comes only from the definition graph. A state change is
a compare-and-swap UPDATE on (id, version, current_state_code); when it hits
no row another caller won the race and ``StateConflictError`` is raised with
the session rolled back, so History never records a lost update.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from caseflow.core.exceptions import (
    ConflictOfInterestError,
    ForbiddenError,
    GuardFailedError,
    InvalidTransitionError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.workflow import TRIGGER_AUTOMATIC, WorkflowExecution, WorkflowHistory
from caseflow.services import coi_service, sla_service
from caseflow.services.graph_store import (
    DefinitionSnapshot,
    StateSnapshot,
    TransitionSnapshot,
    get_definition,
    get_definition_by_id,
)
from caseflow.services.guards import GuardContext, run_guards
from caseflow.utils.helpers import as_utc, iso, utcnow

logger = logging.getLogger(__name__)


@dataclass
class WorkflowResult:
    """Outcome of a successful transition, enough to project status and notify."""

    entity_type: str
    entity_id: str
    organization_id: str | None
    transition_code: str
    previous_state: str
    new_state: str
    is_terminal: bool
    version: int
    history_id: int
    performed_by: str
    performed_at: str
    duration_in_state: int | None = None
    closed_clock: dict | None = None
    opened_clock: dict | None = None
    coi_override_id: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _system_role() -> str:
    return current_app.config.get("SYSTEM_ROLE", "SYSTEM")


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════

def find_execution(entity_type: str, entity_id: str, *, refresh: bool = False) -> WorkflowExecution | None:
    stmt = select(WorkflowExecution).where(
        WorkflowExecution.entity_type == entity_type,
        WorkflowExecution.entity_id == str(entity_id),
    )
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return db.session.execute(stmt).scalar_one_or_none()


def get_execution(entity_type: str, entity_id: str, *, refresh: bool = False) -> WorkflowExecution:
    execution = find_execution(entity_type, entity_id, refresh=refresh)
    if execution is None:
        raise NotFoundError(resource="WorkflowExecution", resource_id=f"{entity_type}/{entity_id}")
    return execution


def _definition_for(execution: WorkflowExecution) -> DefinitionSnapshot:
    return get_definition_by_id(execution.definition_id)


def get_current_state(entity_type: str, entity_id: str) -> StateSnapshot:
    execution = get_execution(entity_type, entity_id)
    state = _definition_for(execution).state(execution.current_state_code)
    if state is None:
        raise NotFoundError(resource="WorkflowState", resource_id=execution.current_state_code)
    return state


def get_history(entity_type: str, entity_id: str) -> list[WorkflowHistory]:
    execution = get_execution(entity_type, entity_id)
    return list(db.session.execute(
        select(WorkflowHistory)
        .where(WorkflowHistory.execution_id == execution.id)
        .order_by(WorkflowHistory.id)
    ).scalars())


def role_permits(transition: TransitionSnapshot, role: str | None) -> bool:
    """AUTOMATIC edges belong to the system role; an empty role set admits anyone."""
    if transition.trigger == TRIGGER_AUTOMATIC:
        return role == _system_role()
    if not transition.allowed_roles:
        return True
    return role in transition.allowed_roles


def get_available_transitions(entity_type: str, entity_id: str, actor_role: str | None, *,
                              actor_id: str | None = None, now=None) -> list[TransitionSnapshot]:
    """
    Outgoing edges of the current state the role may fire.

    When ``actor_id`` is given, edges requiring COI clearance are dropped if
    the actor has a hard-block conflict with the owning organization.
    """
    execution = get_execution(entity_type, entity_id)
    definition = _definition_for(execution)
    edges = [t for t in definition.outgoing(execution.current_state_code) if role_permits(t, actor_role)]

    if actor_id and execution.organization_id and any(t.requires_coi_clearance for t in edges):
        report = coi_service.evaluate(actor_id, execution.organization_id,
                                      entity_id=execution.entity_id, now=now)
        if report.has_hard_block:
            edges = [t for t in edges if not t.requires_coi_clearance]
    return edges


# ═════════════════════════════════════════════════════════════════════════════
# Start
# ═════════════════════════════════════════════════════════════════════════════

def start_execution(entity_type: str, entity_id: str, *, organization_id: str | None = None,
                    performed_by: str = "system", performer_role: str | None = None,
                    now=None) -> tuple[WorkflowExecution, bool]:
    """
    Get-or-create the entity's execution in the active definition's initial
    state. Returns ``(execution, created)``.
    """
    now = now or utcnow()
    entity_id = str(entity_id)
    existing = find_execution(entity_type, entity_id)
    if existing is not None:
        return existing, False

    definition = get_definition(entity_type)
    initial = definition.initial_state
    if initial is None:
        raise ValidationError(f"Active {entity_type} workflow has no initial state",
                              details={"definition_id": definition.id})

    execution = WorkflowExecution(
        definition_id=definition.id,
        entity_type=entity_type,
        entity_id=entity_id,
        organization_id=organization_id,
        current_state_code=initial.code,
        version=1,
        created_at=now,
        updated_at=now,
        completed_at=now if initial.is_terminal else None,
    )
    db.session.add(execution)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        existing = find_execution(entity_type, entity_id)
        if existing is None:
            raise StateConflictError(entity_type, entity_id)
        return existing, False

    db.session.add(WorkflowHistory(
        execution_id=execution.id,
        from_state_code=None,
        to_state_code=initial.code,
        transition_code=None,
        trigger=TRIGGER_AUTOMATIC,
        performed_by=performed_by or "system",
        performer_role=performer_role,
        meta={"definition_version": definition.version},
        performed_at=now,
    ))
    sla_service.open_clock(entity_type, entity_id, initial, execution_id=execution.id, now=now)
    write_audit(
        entity_type=entity_type,
        entity_id=entity_id,
        action="workflow.start",
        actor=performed_by,
        actor_role=performer_role,
        organization_id=organization_id,
        after={"state": initial.code, "definition_id": definition.id, "version": definition.version},
        timestamp=now,
    )
    db.session.commit()
    logger.info("Workflow started: %s/%s in %s", entity_type, entity_id, initial.code,
                extra={"entity_type": entity_type, "entity_id": entity_id})
    return execution, True


# ═════════════════════════════════════════════════════════════════════════════
# Transition
# ═════════════════════════════════════════════════════════════════════════════

def _check_coi(execution: WorkflowExecution, performed_by: str, metadata: dict, now):
    """Gate the performer and, when named, the subject actor; either one blocking fails."""
    if not execution.organization_id:
        raise GuardFailedError("requires_coi_clearance", "entity has no owning organization to check against")

    actors = [performed_by]
    subject = metadata.get("subject_actor_id")
    if subject and subject != performed_by:
        actors.append(str(subject))

    cleared = None
    for actor in actors:
        report = coi_service.evaluate(actor, execution.organization_id, entity_id=execution.entity_id, now=now)
        if report.has_hard_block:
            raise ConflictOfInterestError(actor, execution.organization_id, overridable=False,
                                          report=report.to_dict())
        if report.overridable and report.active_override is None:
            raise ConflictOfInterestError(actor, execution.organization_id, overridable=True,
                                          report=report.to_dict())
        if cleared is None or (cleared.active_override is None and report.active_override is not None):
            cleared = report
    return cleared


def _entered_current_state_at(execution: WorkflowExecution):
    last = db.session.execute(
        select(WorkflowHistory.performed_at)
        .where(WorkflowHistory.execution_id == execution.id)
        .order_by(WorkflowHistory.id.desc())
        .limit(1)
    ).scalar()
    return as_utc(last or execution.created_at)


def execute_transition(
    entity_type: str,
    entity_id: str,
    transition_code: str,
    *,
    performed_by: str,
    performer_role: str | None,
    comment: str | None = None,
    metadata: dict | None = None,
    expected_version: int | None = None,
    now=None,
) -> WorkflowResult:
    now = now or utcnow()
    metadata = dict(metadata or {})
    entity_id = str(entity_id)

    execution = get_execution(entity_type, entity_id, refresh=True)
    read_version = execution.version
    from_state = execution.current_state_code
    if expected_version is not None and int(expected_version) != read_version:
        raise StateConflictError(entity_type, entity_id, expected_version)

    definition = _definition_for(execution)
    transition = definition.transition(from_state, transition_code)
    if transition is None:
        raise InvalidTransitionError(entity_type, entity_id, from_state, transition_code)

    if not role_permits(transition, performer_role):
        allowed = [_system_role()] if transition.trigger == TRIGGER_AUTOMATIC else sorted(transition.allowed_roles)
        raise ForbiddenError(performer_role, transition_code, allowed)

    report = None
    if transition.requires_coi_clearance:
        report = _check_coi(execution, performed_by, metadata, now)

    run_guards(transition.checks, GuardContext(
        entity_type=entity_type,
        entity_id=entity_id,
        organization_id=execution.organization_id,
        transition_code=transition_code,
        from_state=from_state,
        to_state=transition.to_state,
        performer_id=performed_by,
        performer_role=performer_role,
        comment=comment,
        metadata=metadata,
    ))

    target = definition.state(transition.to_state)
    entered_at = _entered_current_state_at(execution)
    duration = max(int((now - entered_at).total_seconds()), 0) if entered_at else None

    swapped = db.session.execute(
        update(WorkflowExecution)
        .where(
            WorkflowExecution.id == execution.id,
            WorkflowExecution.version == read_version,
            WorkflowExecution.current_state_code == from_state,
        )
        .values(
            current_state_code=transition.to_state,
            version=read_version + 1,
            updated_at=now,
            completed_at=now if target.is_terminal else None,
        )
        .execution_options(synchronize_session=False)
    )
    if swapped.rowcount != 1:
        db.session.rollback()
        logger.warning("Concurrent transition rejected: %s/%s %s", entity_type, entity_id, transition_code,
                       extra={"entity_type": entity_type, "entity_id": entity_id, "transition": transition_code})
        raise StateConflictError(entity_type, entity_id, expected_version if expected_version is not None
                                 else read_version)

    override = report.active_override if report is not None else None
    if override is not None:
        metadata["coi_override_id"] = override.id
    history = WorkflowHistory(
        execution_id=execution.id,
        from_state_code=from_state,
        to_state_code=transition.to_state,
        transition_code=transition_code,
        trigger=transition.trigger,
        performed_by=performed_by,
        performer_role=performer_role,
        comment=comment,
        meta=metadata,
        performed_at=now,
        duration_in_state=duration,
    )
    db.session.add(history)
    db.session.flush()

    closed = sla_service.close_clock(entity_type, entity_id, now=now, commit=False)
    opened = sla_service.open_clock(entity_type, entity_id, target, execution_id=execution.id, now=now)

    write_audit(
        entity_type=entity_type,
        entity_id=entity_id,
        action="workflow.transition",
        actor=performed_by,
        actor_role=performer_role,
        organization_id=execution.organization_id,
        before={"state": from_state, "version": read_version},
        after={"state": transition.to_state, "version": read_version + 1, "transition": transition_code},
        timestamp=now,
    )
    db.session.commit()
    db.session.expire(execution)

    logger.info("Transition %s: %s/%s %s -> %s by %s", transition_code, entity_type, entity_id,
                from_state, transition.to_state, performed_by,
                extra={"entity_type": entity_type, "entity_id": entity_id, "transition": transition_code,
                       "actor_id": performed_by})
    return WorkflowResult(
        entity_type=entity_type,
        entity_id=entity_id,
        organization_id=execution.organization_id,
        transition_code=transition_code,
        previous_state=from_state,
        new_state=transition.to_state,
        is_terminal=target.is_terminal,
        version=read_version + 1,
        history_id=history.id,
        performed_by=performed_by,
        performed_at=iso(now),
        duration_in_state=duration,
        closed_clock=closed.to_dict() if closed else None,
        opened_clock=opened.to_dict() if opened else None,
        coi_override_id=override.id if override is not None else None,
    )


def execute_automatic_transition(entity_type: str, entity_id: str, transition_code: str, *,
                                 comment: str | None = None, metadata: dict | None = None,
                                 now=None) -> WorkflowResult:
    """Fire an AUTOMATIC edge on behalf of a job or another mutation."""
    return execute_transition(
        entity_type, entity_id, transition_code,
        performed_by="system",
        performer_role=_system_role(),
        comment=comment,
        metadata=metadata,
        now=now,
    )
