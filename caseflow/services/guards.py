"""
Transition guard registry.

Business preconditions that depend on records the engine does not own
("no open findings remain", "evidence uploaded") are registered here by the
surrounding application and named in a transition's ``guards.checks`` list.

Usage:
    from caseflow.services.guards import register_guard

    @register_guard("no_open_findings")
    def _no_open_findings(ctx):
        if open_finding_count(ctx.entity_id):
            return "open findings remain"
        return True

A guard passes by returning ``True`` (or ``None``); returning ``False`` or a
reason string fails the transition with ``GuardFailedError``. Names that are
not registered fail closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from caseflow.core.exceptions import GuardFailedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardContext:
    entity_type: str
    entity_id: str
    organization_id: str | None
    transition_code: str
    from_state: str
    to_state: str
    performer_id: str
    performer_role: str | None
    comment: str | None = None
    metadata: dict = field(default_factory=dict)


GuardFn = Callable[[GuardContext], "bool | str | None"]

_guard_registry: dict[str, GuardFn] = {}


def register_guard(name: str):
    """Decorator to register a guard function under ``name``."""
    def decorator(fn: GuardFn) -> GuardFn:
        _guard_registry[name] = fn
        return fn
    return decorator


def unregister_guard(name: str) -> None:
    _guard_registry.pop(name, None)


def get_registered_guards() -> list[str]:
    return sorted(_guard_registry)


def run_guards(names, ctx: GuardContext) -> None:
    """Evaluate every named guard in order; raise on the first failure."""
    for name in names:
        fn = _guard_registry.get(name)
        if fn is None:
            logger.warning("Transition %s names unregistered guard '%s'", ctx.transition_code, name,
                           extra={"entity_type": ctx.entity_type, "entity_id": ctx.entity_id})
            raise GuardFailedError(name, "guard is not registered")
        outcome = fn(ctx)
        if outcome is True or outcome is None:
            continue
        reason = outcome if isinstance(outcome, str) else None
        raise GuardFailedError(name, reason)


# ── Built-in guards ──────────────────────────────────────────────────────────

@register_guard("comment_required")
def _comment_required(ctx: GuardContext):
    if ctx.comment and ctx.comment.strip():
        return True
    return "a comment is required for this transition"
