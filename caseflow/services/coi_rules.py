"""
COI auto-detection rules.

A rule is a pure function ``(ActorFacts, RuleContext) -> list[DetectedConflict]``.
Rules never touch the database; ``coi_service.sync_actor`` reconciles their
output against stored auto-detected conflicts. New conflict types plug in
through ``register_coi_rule`` without touching the engine or the override
manager.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

from caseflow.models.coi import (
    FAMILY_RELATIONSHIP,
    FINANCIAL_INTEREST,
    HOME_ORGANIZATION,
    RECENT_EMPLOYMENT,
    RECENT_REVIEW,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisclosureFact:
    kind: str
    organization_id: str
    start_date: date | None = None
    end_date: date | None = None

    def is_ongoing(self, today: date) -> bool:
        return self.end_date is None or self.end_date >= today


@dataclass(frozen=True)
class ActorFacts:
    actor_id: str
    home_organization_id: str | None = None
    disclosures: tuple[DisclosureFact, ...] = field(default_factory=tuple)

    def of_kind(self, kind: str) -> list[DisclosureFact]:
        return [d for d in self.disclosures if d.kind == kind]


@dataclass(frozen=True)
class RuleContext:
    today: date
    recent_employment_years: int = 3
    recent_review_years: int = 2


@dataclass(frozen=True)
class DetectedConflict:
    organization_id: str
    coi_type: str
    source_ref: str
    description: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return self.organization_id, self.coi_type


CoiRule = Callable[[ActorFacts, RuleContext], list[DetectedConflict]]

_rules: dict[str, CoiRule] = {}


def register_coi_rule(name: str):
    """Decorator to register an auto-detection rule."""
    def decorator(fn: CoiRule) -> CoiRule:
        _rules[name] = fn
        return fn
    return decorator


def get_rules() -> dict[str, CoiRule]:
    return dict(_rules)


def years_before(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # 29 February in a non-leap target year
        return today.replace(year=today.year - years, day=28)


def detect_conflicts(facts: ActorFacts, ctx: RuleContext) -> list[DetectedConflict]:
    """Run every rule; one conflict per (organization, type), first rule wins."""
    detected: dict[tuple[str, str], DetectedConflict] = {}
    for name, rule in _rules.items():
        for conflict in rule(facts, ctx):
            if not conflict.organization_id:
                continue
            detected.setdefault(conflict.key, conflict)
        logger.debug("COI rule %s evaluated", name, extra={"actor_id": facts.actor_id})
    return sorted(detected.values(), key=lambda c: (c.organization_id, c.coi_type))


# ── Built-in rules ───────────────────────────────────────────────────────────

@register_coi_rule("home_organization")
def _home_organization(facts: ActorFacts, ctx: RuleContext) -> list[DetectedConflict]:
    if not facts.home_organization_id:
        return []
    return [DetectedConflict(
        organization_id=facts.home_organization_id,
        coi_type=HOME_ORGANIZATION,
        source_ref=f"home:{facts.home_organization_id}",
        description="Actor's current employer",
    )]


@register_coi_rule("family_relationship")
def _family_relationship(facts: ActorFacts, ctx: RuleContext) -> list[DetectedConflict]:
    return [
        DetectedConflict(
            organization_id=d.organization_id,
            coi_type=FAMILY_RELATIONSHIP,
            source_ref=f"family:{d.organization_id}",
            description="Immediate family member works at the organization",
        )
        for d in facts.of_kind("FAMILY")
        if d.is_ongoing(ctx.today)
    ]


@register_coi_rule("recent_employment")
def _recent_employment(facts: ActorFacts, ctx: RuleContext) -> list[DetectedConflict]:
    cutoff = years_before(ctx.today, ctx.recent_employment_years)
    conflicts = []
    for d in facts.of_kind("EMPLOYMENT"):
        if d.organization_id == facts.home_organization_id:
            continue
        if d.end_date is None or d.end_date >= cutoff:
            conflicts.append(DetectedConflict(
                organization_id=d.organization_id,
                coi_type=RECENT_EMPLOYMENT,
                source_ref=f"employment:{d.organization_id}",
                description=f"Employed by the organization within the last {ctx.recent_employment_years} years",
            ))
    return conflicts


@register_coi_rule("financial_interest")
def _financial_interest(facts: ActorFacts, ctx: RuleContext) -> list[DetectedConflict]:
    return [
        DetectedConflict(
            organization_id=d.organization_id,
            coi_type=FINANCIAL_INTEREST,
            source_ref=f"financial:{d.organization_id}",
            description="Declared financial or consulting interest",
        )
        for d in facts.of_kind("FINANCIAL")
        if d.is_ongoing(ctx.today)
    ]


@register_coi_rule("recent_review")
def _recent_review(facts: ActorFacts, ctx: RuleContext) -> list[DetectedConflict]:
    cutoff = years_before(ctx.today, ctx.recent_review_years)
    conflicts = []
    for d in facts.of_kind("REVIEW_PARTICIPATION"):
        last_day = d.end_date or d.start_date
        if last_day is not None and last_day > cutoff:
            conflicts.append(DetectedConflict(
                organization_id=d.organization_id,
                coi_type=RECENT_REVIEW,
                source_ref=f"review:{d.organization_id}",
                description=f"Reviewed this organization within the last {ctx.recent_review_years} years",
            ))
    return conflicts
