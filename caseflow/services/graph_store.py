"""
State Graph Store — workflow definitions, cached reads and authoring.

Read path:
    get_definition(entity_type)             → active DefinitionSnapshot
    get_definition_by_id(definition_id)     → DefinitionSnapshot (any version)
    get_transition(definition_id, from, code)

Snapshots are frozen dataclasses built from the ORM rows and cached in
process for ``DEFINITION_CACHE_TTL`` seconds; publish/update/clone drop the
cache. Executions pin a definition id, so a newly published version never
changes the graph an in-flight entity is walking.

Write path (admin authoring, out of the hot path):
    create_definition → validate_definition → publish_definition
    clone_definition for editing a definition already in use.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func, select

from caseflow.core.exceptions import NotFoundError, ValidationError
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.workflow import (
    ENTITY_TYPES,
    ESCALATION_ACTIONS,
    ESCALATION_TRIGGERS,
    TRANSITION_TRIGGERS,
    TRIGGER_USER,
    EscalationRule,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowState,
    WorkflowTransition,
)
from caseflow.services.guards import get_registered_guards
from caseflow.utils.helpers import iso, utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Snapshots
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StateSnapshot:
    id: int
    code: str
    label_en: str
    label_fr: str
    is_initial: bool
    is_terminal: bool
    sort_order: int
    default_sla_days: int | None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "label_en": self.label_en,
            "label_fr": self.label_fr,
            "is_initial": self.is_initial,
            "is_terminal": self.is_terminal,
            "sort_order": self.sort_order,
            "default_sla_days": self.default_sla_days,
        }


@dataclass(frozen=True)
class TransitionSnapshot:
    id: int
    code: str
    from_state: str
    to_state: str
    label_en: str
    label_fr: str
    trigger: str
    allowed_roles: frozenset[str]
    requires_coi_clearance: bool = False
    checks: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "label_en": self.label_en,
            "label_fr": self.label_fr,
            "trigger": self.trigger,
            "allowed_roles": sorted(self.allowed_roles),
            "requires_coi_clearance": self.requires_coi_clearance,
            "checks": list(self.checks),
        }


@dataclass(frozen=True)
class DefinitionSnapshot:
    id: int
    code: str
    entity_type: str
    version: int
    is_active: bool
    states: tuple[StateSnapshot, ...]
    transitions: tuple[TransitionSnapshot, ...]
    _states_by_code: dict = field(default_factory=dict, repr=False, compare=False)

    def state(self, code: str) -> StateSnapshot | None:
        return self._states_by_code.get(code)

    @property
    def initial_state(self) -> StateSnapshot | None:
        for state in self.states:
            if state.is_initial:
                return state
        return None

    def outgoing(self, state_code: str) -> list[TransitionSnapshot]:
        return [t for t in self.transitions if t.from_state == state_code]

    def transition(self, from_state: str, code: str) -> TransitionSnapshot | None:
        for t in self.transitions:
            if t.from_state == from_state and t.code == code:
                return t
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "entity_type": self.entity_type,
            "version": self.version,
            "is_active": self.is_active,
            "states": [s.to_dict() for s in self.states],
            "transitions": [t.to_dict() for t in self.transitions],
        }


def _snapshot(definition: WorkflowDefinition) -> DefinitionSnapshot:
    states = tuple(
        StateSnapshot(
            id=s.id,
            code=s.code,
            label_en=s.label_en,
            label_fr=s.label_fr,
            is_initial=bool(s.is_initial),
            is_terminal=bool(s.is_terminal),
            sort_order=s.sort_order or 0,
            default_sla_days=s.default_sla_days,
        )
        for s in definition.states
    )
    codes_by_id = {s.id: s.code for s in definition.states}
    transitions = []
    for t in definition.transitions:
        guards = t.guards or {}
        transitions.append(TransitionSnapshot(
            id=t.id,
            code=t.code,
            from_state=codes_by_id.get(t.from_state_id, ""),
            to_state=codes_by_id.get(t.to_state_id, ""),
            label_en=t.label_en,
            label_fr=t.label_fr,
            trigger=t.trigger,
            allowed_roles=frozenset(t.allowed_roles or ()),
            requires_coi_clearance=bool(guards.get("requires_coi_clearance", False)),
            checks=tuple(guards.get("checks") or ()),
        ))
    return DefinitionSnapshot(
        id=definition.id,
        code=definition.code,
        entity_type=definition.entity_type,
        version=definition.version,
        is_active=bool(definition.is_active),
        states=states,
        transitions=tuple(transitions),
        _states_by_code={s.code: s for s in states},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Cache
# ═════════════════════════════════════════════════════════════════════════════

_cache: dict[tuple[str, object], tuple[DefinitionSnapshot, float]] = {}
_cache_lock = threading.Lock()


def _cache_get(key):
    with _cache_lock:
        entry = _cache.get(key)
        if entry is None:
            return None
        snapshot, expires = entry
        if time.monotonic() >= expires:
            _cache.pop(key, None)
            return None
        return snapshot


def _cache_put(key, snapshot: DefinitionSnapshot) -> None:
    ttl = current_app.config.get("DEFINITION_CACHE_TTL", 300)
    if ttl <= 0:
        return
    with _cache_lock:
        _cache[key] = (snapshot, time.monotonic() + ttl)


def invalidate_cache() -> None:
    with _cache_lock:
        _cache.clear()


# ═════════════════════════════════════════════════════════════════════════════
# Read path
# ═════════════════════════════════════════════════════════════════════════════

def get_definition(entity_type: str) -> DefinitionSnapshot:
    """Active definition for an entity type."""
    key = ("active", entity_type)
    cached = _cache_get(key)
    if cached is not None:
        return cached

    definition = db.session.execute(
        select(WorkflowDefinition)
        .where(WorkflowDefinition.entity_type == entity_type, WorkflowDefinition.is_active.is_(True))
        .order_by(WorkflowDefinition.version.desc())
    ).scalars().first()
    if definition is None:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=entity_type)

    snapshot = _snapshot(definition)
    _cache_put(key, snapshot)
    _cache_put(("id", snapshot.id), snapshot)
    return snapshot


def get_definition_by_id(definition_id: int) -> DefinitionSnapshot:
    key = ("id", definition_id)
    cached = _cache_get(key)
    if cached is not None:
        return cached

    definition = db.session.get(WorkflowDefinition, definition_id)
    if definition is None:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=definition_id)
    snapshot = _snapshot(definition)
    _cache_put(key, snapshot)
    return snapshot


def get_transition(definition_id: int, from_state: str, transition_code: str) -> TransitionSnapshot:
    transition = get_definition_by_id(definition_id).transition(from_state, transition_code)
    if transition is None:
        raise NotFoundError(
            resource="WorkflowTransition",
            resource_id=f"{definition_id}/{from_state}/{transition_code}",
        )
    return transition


def list_definitions(entity_type: str | None = None, active_only: bool = False) -> list[WorkflowDefinition]:
    stmt = select(WorkflowDefinition).order_by(
        WorkflowDefinition.entity_type, WorkflowDefinition.version.desc(),
    )
    if entity_type:
        stmt = stmt.where(WorkflowDefinition.entity_type == entity_type)
    if active_only:
        stmt = stmt.where(WorkflowDefinition.is_active.is_(True))
    return list(db.session.execute(stmt).scalars())


def get_definition_record(definition_id: int) -> WorkflowDefinition:
    definition = db.session.get(WorkflowDefinition, definition_id)
    if definition is None:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=definition_id)
    return definition


# ═════════════════════════════════════════════════════════════════════════════
# Integrity checks
# ═════════════════════════════════════════════════════════════════════════════

def graph_problems(states: list[dict], transitions: list[dict]) -> list[str]:
    """
    Integrity problems of a state graph.

    ``states``: [{"code", "is_initial", "is_terminal"}]
    ``transitions``: [{"code", "from", "to"}]
    """
    problems: list[str] = []
    codes = [s["code"] for s in states]
    known = set(codes)
    if len(known) != len(codes):
        problems.append("State codes must be unique")

    initial = [s["code"] for s in states if s.get("is_initial")]
    if len(initial) != 1:
        problems.append(f"Exactly one initial state required, found {len(initial)}")

    terminal = {s["code"] for s in states if s.get("is_terminal")}
    seen_edges = set()
    adjacency: dict[str, set[str]] = {code: set() for code in known}
    for t in transitions:
        src, dst, code = t.get("from"), t.get("to"), t.get("code")
        if src not in known:
            problems.append(f"Transition '{code}' starts at unknown state '{src}'")
            continue
        if dst not in known:
            problems.append(f"Transition '{code}' targets unknown state '{dst}'")
            continue
        if src in terminal:
            problems.append(f"Terminal state '{src}' has outgoing transition '{code}'")
        if (src, code) in seen_edges:
            problems.append(f"Duplicate transition code '{code}' from state '{src}'")
        seen_edges.add((src, code))
        adjacency[src].add(dst)

    if len(initial) == 1:
        reached = {initial[0]}
        queue = deque(reached)
        while queue:
            for nxt in adjacency.get(queue.popleft(), ()):
                if nxt not in reached:
                    reached.add(nxt)
                    queue.append(nxt)
        for code in codes:
            if code not in reached:
                problems.append(f"State '{code}' is unreachable from initial state '{initial[0]}'")
    return problems


def validate_definition(definition_id: int) -> list[str]:
    """Integrity problems for a stored definition; empty list = publishable."""
    definition = get_definition_record(definition_id)
    codes_by_id = {s.id: s.code for s in definition.states}
    states = [
        {"code": s.code, "is_initial": s.is_initial, "is_terminal": s.is_terminal}
        for s in definition.states
    ]
    transitions = [
        {
            "code": t.code,
            # A state id from another definition shows up as unknown
            "from": codes_by_id.get(t.from_state_id, f"#{t.from_state_id}"),
            "to": codes_by_id.get(t.to_state_id, f"#{t.to_state_id}"),
        }
        for t in definition.transitions
    ]
    problems = graph_problems(states, transitions)
    for rule in definition.escalation_rules:
        if rule.state_id not in codes_by_id:
            problems.append(f"Escalation rule {rule.id} is attached to a foreign state")
    registered = set(get_registered_guards())
    for t in definition.transitions:
        for name in (t.guards or {}).get("checks", []):
            if name not in registered:
                problems.append(f"Transition '{t.code}' names unregistered guard '{name}'")
    return problems


# ═════════════════════════════════════════════════════════════════════════════
# Authoring
# ═════════════════════════════════════════════════════════════════════════════

def _is_referenced(definition_id: int) -> bool:
    count = db.session.execute(
        select(func.count(WorkflowExecution.id)).where(WorkflowExecution.definition_id == definition_id)
    ).scalar_one()
    return count > 0


def _next_version(entity_type: str) -> int:
    current = db.session.execute(
        select(func.max(WorkflowDefinition.version)).where(WorkflowDefinition.entity_type == entity_type)
    ).scalar()
    return (current or 0) + 1


def _check_payload(payload: dict) -> list[str]:
    problems: list[str] = []
    if payload.get("entity_type") not in ENTITY_TYPES:
        problems.append(f"entity_type must be one of {sorted(ENTITY_TYPES)}")
    if not payload.get("code"):
        problems.append("code is required")
    if not payload.get("states"):
        problems.append("At least one state is required")

    state_codes = {s.get("code") for s in payload.get("states") or []}
    for s in payload.get("states") or []:
        if not s.get("code"):
            problems.append("Every state needs a code")
        sla = s.get("default_sla_days")
        if sla is not None and (not isinstance(sla, int) or sla <= 0):
            problems.append(f"State '{s.get('code')}' default_sla_days must be a positive integer")

    for t in payload.get("transitions") or []:
        if not t.get("code"):
            problems.append("Every transition needs a code")
        if t.get("trigger", TRIGGER_USER) not in TRANSITION_TRIGGERS:
            problems.append(f"Transition '{t.get('code')}' trigger must be one of {sorted(TRANSITION_TRIGGERS)}")
        for end in ("from", "to"):
            if t.get(end) not in state_codes:
                problems.append(
                    f"Transition '{t.get('code')}' references state '{t.get(end)}' outside this definition"
                )

    for r in payload.get("escalation_rules") or []:
        if r.get("state") not in state_codes:
            problems.append(f"Escalation rule '{r.get('name')}' references unknown state '{r.get('state')}'")
        if r.get("trigger", "BEFORE_DUE") not in ESCALATION_TRIGGERS:
            problems.append(f"Escalation rule trigger must be one of {sorted(ESCALATION_TRIGGERS)}")
        if r.get("action", "NOTIFY") not in ESCALATION_ACTIONS:
            problems.append(f"Escalation rule action must be one of {sorted(ESCALATION_ACTIONS)}")
    return problems


def _build_graph(definition: WorkflowDefinition, payload: dict) -> None:
    """Attach states, transitions and rules from ``payload`` to ``definition``."""
    by_code: dict[str, WorkflowState] = {}
    for index, s in enumerate(payload.get("states") or []):
        state = WorkflowState(
            code=s["code"],
            label_en=s.get("label_en") or s["code"].replace("_", " ").title(),
            label_fr=s.get("label_fr") or "",
            is_initial=bool(s.get("is_initial", False)),
            is_terminal=bool(s.get("is_terminal", False)),
            sort_order=s.get("sort_order", index + 1),
            default_sla_days=s.get("default_sla_days"),
        )
        definition.states.append(state)
        by_code[state.code] = state
    db.session.flush()

    for t in payload.get("transitions") or []:
        definition.transitions.append(WorkflowTransition(
            code=t["code"],
            from_state_id=by_code[t["from"]].id,
            to_state_id=by_code[t["to"]].id,
            label_en=t.get("label_en") or t["code"].replace("_", " ").title(),
            label_fr=t.get("label_fr") or "",
            trigger=t.get("trigger", TRIGGER_USER),
            allowed_roles=list(t.get("allowed_roles") or []),
            guards=dict(t.get("guards") or {}),
        ))

    for r in payload.get("escalation_rules") or []:
        definition.escalation_rules.append(EscalationRule(
            state_id=by_code[r["state"]].id,
            name=r.get("name") or "",
            trigger=r.get("trigger", "BEFORE_DUE"),
            threshold_days=int(r.get("threshold_days", 0)),
            notify_target=r.get("notify_target") or "",
            action=r.get("action", "NOTIFY"),
            fire_once=bool(r.get("fire_once", True)),
            repeat_interval_days=r.get("repeat_interval_days"),
            max_repeats=r.get("max_repeats"),
            is_active=bool(r.get("is_active", True)),
        ))
    db.session.flush()


def _graph_payload(definition: WorkflowDefinition) -> dict:
    """Serialise a stored definition back into the authoring payload shape."""
    codes_by_id = {s.id: s.code for s in definition.states}
    return {
        "code": definition.code,
        "entity_type": definition.entity_type,
        "name": definition.name,
        "description": definition.description,
        "states": [
            {
                "code": s.code, "label_en": s.label_en, "label_fr": s.label_fr,
                "is_initial": s.is_initial, "is_terminal": s.is_terminal,
                "sort_order": s.sort_order, "default_sla_days": s.default_sla_days,
            }
            for s in definition.states
        ],
        "transitions": [
            {
                "code": t.code, "from": codes_by_id[t.from_state_id], "to": codes_by_id[t.to_state_id],
                "label_en": t.label_en, "label_fr": t.label_fr, "trigger": t.trigger,
                "allowed_roles": list(t.allowed_roles or []), "guards": dict(t.guards or {}),
            }
            for t in definition.transitions
        ],
        "escalation_rules": [
            {
                "state": codes_by_id[r.state_id], "name": r.name, "trigger": r.trigger,
                "threshold_days": r.threshold_days, "notify_target": r.notify_target,
                "action": r.action, "fire_once": r.fire_once,
                "repeat_interval_days": r.repeat_interval_days, "max_repeats": r.max_repeats,
                "is_active": r.is_active,
            }
            for r in definition.escalation_rules
        ],
    }


def create_definition(payload: dict, *, created_by: str | None = None) -> WorkflowDefinition:
    """Create an inactive draft definition (next version for its entity type)."""
    problems = _check_payload(payload)
    if problems:
        raise ValidationError("Invalid workflow definition", details={"problems": problems})

    definition = WorkflowDefinition(
        code=payload["code"],
        entity_type=payload["entity_type"],
        version=_next_version(payload["entity_type"]),
        name=payload.get("name") or payload["code"],
        description=payload.get("description") or "",
        is_active=False,
        created_by=created_by,
    )
    db.session.add(definition)
    db.session.flush()
    _build_graph(definition, payload)

    write_audit(
        entity_type="workflow_definition",
        entity_id=definition.id,
        action="workflow.create",
        actor=created_by,
        after={"code": definition.code, "entity_type": definition.entity_type, "version": definition.version},
    )
    db.session.commit()
    logger.info("Workflow definition created: %s v%d", definition.code, definition.version,
                extra={"entity_type": definition.entity_type})
    return definition


def update_definition(definition_id: int, payload: dict, *, updated_by: str | None = None) -> WorkflowDefinition:
    """Replace the graph of an inactive draft no execution references yet."""
    definition = get_definition_record(definition_id)
    if definition.is_active:
        raise ValidationError(
            "Active definition is immutable; clone it to edit",
            details={"definition_id": definition_id},
        )
    if _is_referenced(definition_id):
        raise ValidationError(
            "Definition is referenced by executions and is immutable; clone it to edit",
            details={"definition_id": definition_id},
        )
    merged = {**_graph_payload(definition), **payload, "entity_type": definition.entity_type}
    problems = _check_payload(merged)
    if problems:
        raise ValidationError("Invalid workflow definition", details={"problems": problems})

    before = {"states": len(definition.states), "transitions": len(definition.transitions)}
    definition.name = merged.get("name") or definition.name
    definition.description = merged.get("description") or ""
    definition.escalation_rules.clear()
    definition.transitions.clear()
    definition.states.clear()
    db.session.flush()
    _build_graph(definition, merged)

    write_audit(
        entity_type="workflow_definition",
        entity_id=definition.id,
        action="workflow.update",
        actor=updated_by,
        before=before,
        after={"states": len(definition.states), "transitions": len(definition.transitions)},
    )
    db.session.commit()
    invalidate_cache()
    return definition


def publish_definition(definition_id: int, *, published_by: str | None = None, now=None) -> WorkflowDefinition:
    """Validate and activate; the previously active version is deactivated."""
    now = now or utcnow()
    definition = get_definition_record(definition_id)
    problems = validate_definition(definition_id)
    if problems:
        raise ValidationError("Workflow definition failed integrity checks", details={"problems": problems})

    previous = db.session.execute(
        select(WorkflowDefinition).where(
            WorkflowDefinition.entity_type == definition.entity_type,
            WorkflowDefinition.is_active.is_(True),
            WorkflowDefinition.id != definition.id,
        )
    ).scalars().all()
    for old in previous:
        old.is_active = False

    definition.is_active = True
    definition.published_at = now

    write_audit(
        entity_type="workflow_definition",
        entity_id=definition.id,
        action="workflow.publish",
        actor=published_by,
        before={"active_version": previous[0].version if previous else None},
        after={"active_version": definition.version, "published_at": iso(now)},
    )
    db.session.commit()
    invalidate_cache()
    logger.info("Workflow definition published: %s v%d", definition.code, definition.version,
                extra={"entity_type": definition.entity_type})
    return definition


def clone_definition(definition_id: int, *, cloned_by: str | None = None) -> WorkflowDefinition:
    """Copy a definition into a new inactive version for editing."""
    source = get_definition_record(definition_id)
    payload = _graph_payload(source)

    clone = WorkflowDefinition(
        code=source.code,
        entity_type=source.entity_type,
        version=_next_version(source.entity_type),
        name=source.name,
        description=source.description,
        is_active=False,
        created_by=cloned_by,
    )
    db.session.add(clone)
    db.session.flush()
    _build_graph(clone, payload)

    write_audit(
        entity_type="workflow_definition",
        entity_id=clone.id,
        action="workflow.clone",
        actor=cloned_by,
        before={"source_id": source.id, "source_version": source.version},
        after={"version": clone.version},
    )
    db.session.commit()
    invalidate_cache()
    return clone
