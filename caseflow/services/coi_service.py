"""
COI Detector — conflict reports, actor facts and reconciliation.

Usage:
    from caseflow.services import coi_service

    report = coi_service.evaluate("R-17", "ORG-4")
    report.has_hard_block, report.active_override

Auto-detected conflicts are derived from ``ActorProfile`` / ``ActorDisclosure``
facts by the rule set in ``coi_rules`` and reconciled by ``sync_actor``:
rows whose fact disappeared are end-dated, new facts create rows, manually
declared rows are never touched.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import select

from caseflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.coi import (
    ALWAYS_HARD_BLOCK,
    COI_SEVERITIES,
    COI_TYPES,
    DEFAULT_SEVERITY,
    DISCLOSURE_KINDS,
    HARD_BLOCK,
    OVERRIDABLE,
    ActorDisclosure,
    ActorProfile,
    COIOverride,
    ReviewerCOI,
)
from caseflow.services.coi_rules import ActorFacts, DisclosureFact, RuleContext, detect_conflicts
from caseflow.utils.helpers import parse_date, parse_datetime, utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Conflict report
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class ConflictReport:
    actor_id: str
    organization_id: str
    entity_id: str | None = None
    conflicts: list[ReviewerCOI] = field(default_factory=list)
    active_override: COIOverride | None = None

    @property
    def hard_blocks(self) -> list[ReviewerCOI]:
        return [c for c in self.conflicts if c.severity == HARD_BLOCK]

    @property
    def overridable(self) -> list[ReviewerCOI]:
        return [c for c in self.conflicts if c.severity == OVERRIDABLE]

    @property
    def has_conflict(self) -> bool:
        return bool(self.conflicts)

    @property
    def has_hard_block(self) -> bool:
        return bool(self.hard_blocks)

    @property
    def can_proceed_with_override(self) -> bool:
        """Only overridable conflicts, and an active override covers them."""
        return not self.has_hard_block and bool(self.overridable) and self.active_override is not None

    @property
    def is_cleared(self) -> bool:
        return not self.has_conflict or self.can_proceed_with_override

    @property
    def status(self) -> str:
        if self.has_hard_block:
            return "blocked"
        if self.can_proceed_with_override:
            return "override_active"
        if self.overridable:
            return "warning"
        return "eligible"

    def to_dict(self) -> dict:
        return {
            "actor_id": self.actor_id,
            "organization_id": self.organization_id,
            "entity_id": self.entity_id,
            "has_conflict": self.has_conflict,
            "has_hard_block": self.has_hard_block,
            "can_proceed_with_override": self.can_proceed_with_override,
            "status": self.status,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "hard_blocks": [c.to_dict() for c in self.hard_blocks],
            "overridable": [c.to_dict() for c in self.overridable],
            "active_override": self.active_override.to_dict() if self.active_override else None,
        }


def _rule_context(now) -> RuleContext:
    return RuleContext(
        today=now.date(),
        recent_employment_years=current_app.config.get("COI_RECENT_EMPLOYMENT_YEARS", 3),
        recent_review_years=current_app.config.get("COI_RECENT_REVIEW_YEARS", 2),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def active_conflicts(actor_id: str, organization_id: str, now=None) -> list[ReviewerCOI]:
    """Conflicts in force between an actor and an organization at ``now``."""
    now = now or utcnow()
    rows = db.session.execute(
        select(ReviewerCOI)
        .where(
            ReviewerCOI.actor_id == actor_id,
            ReviewerCOI.organization_id == organization_id,
            ReviewerCOI.is_active.is_(True),
        )
        .order_by(ReviewerCOI.id)
    ).scalars()
    return [c for c in rows if c.is_current(now)]


def evaluate(actor_id: str, organization_id: str, *, entity_id: str | None = None, now=None) -> ConflictReport:
    """Conflict report for one actor against one organization (read-only)."""
    from caseflow.services.coi_override_service import find_active_override

    now = now or utcnow()
    report = ConflictReport(
        actor_id=actor_id,
        organization_id=organization_id,
        entity_id=entity_id,
        conflicts=active_conflicts(actor_id, organization_id, now),
    )
    if report.overridable:
        report.active_override = find_active_override(actor_id, organization_id, entity_id=entity_id, now=now)
    return report


def evaluate_team(actor_ids: list[str], organization_id: str, *, entity_id: str | None = None, now=None) -> dict:
    """Per-actor reports plus a summary, used before team assignment."""
    now = now or utcnow()
    members = []
    for actor_id in dict.fromkeys(actor_ids):
        report = evaluate(actor_id, organization_id, entity_id=entity_id, now=now)
        members.append({"actor_id": actor_id, "status": report.status, "report": report.to_dict()})

    counts = Counter(m["status"] for m in members)
    return {
        "organization_id": organization_id,
        "entity_id": entity_id,
        "members": members,
        "summary": {
            "total": len(members),
            "eligible": counts["eligible"],
            "blocked": counts["blocked"],
            "warning": counts["warning"],
            "override_active": counts["override_active"],
        },
        "can_proceed": counts["blocked"] == 0,
        "blocked_actor_ids": [m["actor_id"] for m in members if m["status"] == "blocked"],
        "warning_actor_ids": [m["actor_id"] for m in members if m["status"] == "warning"],
    }


def list_cois(actor_id: str | None = None, organization_id: str | None = None,
              active_only: bool = True, now=None) -> list[ReviewerCOI]:
    now = now or utcnow()
    stmt = select(ReviewerCOI).order_by(ReviewerCOI.id)
    if actor_id:
        stmt = stmt.where(ReviewerCOI.actor_id == actor_id)
    if organization_id:
        stmt = stmt.where(ReviewerCOI.organization_id == organization_id)
    rows = list(db.session.execute(stmt).scalars())
    if active_only:
        rows = [c for c in rows if c.is_current(now)]
    return rows


def get_coi(coi_id: int) -> ReviewerCOI:
    coi = db.session.get(ReviewerCOI, coi_id)
    if coi is None:
        raise NotFoundError(resource="ReviewerCOI", resource_id=coi_id)
    return coi


def get_coi_stats(*, actor_id: str | None = None, organization_id: str | None = None, now=None) -> dict:
    from caseflow.services.coi_override_service import list_overrides

    now = now or utcnow()
    rows = list_cois(actor_id, organization_id, active_only=False, now=now)
    active = [c for c in rows if c.is_current(now)]
    return {
        "total": len(rows),
        "active": len(active),
        "inactive": len(rows) - len(active),
        "by_type": {t: sum(1 for c in active if c.coi_type == t) for t in sorted(COI_TYPES)},
        "by_severity": {s: sum(1 for c in active if c.severity == s) for s in sorted(COI_SEVERITIES)},
        "auto_detected": sum(1 for c in active if c.is_auto_detected),
        "manually_declared": sum(1 for c in active if not c.is_auto_detected),
        "active_overrides": len(list_overrides(actor_id=actor_id, organization_id=organization_id,
                                               active_only=True, now=now)),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Actor facts & reconciliation
# ═════════════════════════════════════════════════════════════════════════════

def _get_profile(actor_id: str) -> ActorProfile | None:
    return db.session.execute(
        select(ActorProfile).where(ActorProfile.actor_id == actor_id)
    ).scalar_one_or_none()


def get_profile(actor_id: str) -> ActorProfile:
    profile = _get_profile(actor_id)
    if profile is None:
        raise NotFoundError(resource="ActorProfile", resource_id=actor_id)
    return profile


def get_actor_facts(actor_id: str) -> ActorFacts:
    profile = _get_profile(actor_id)
    if profile is None:
        return ActorFacts(actor_id=actor_id)
    return ActorFacts(
        actor_id=actor_id,
        home_organization_id=profile.home_organization_id,
        disclosures=tuple(
            DisclosureFact(
                kind=d.kind,
                organization_id=d.organization_id,
                start_date=d.start_date,
                end_date=d.end_date,
            )
            for d in profile.disclosures
        ),
    )


def update_actor_profile(
    actor_id: str,
    *,
    home_organization_id: str | None = None,
    display_name: str | None = None,
    disclosures: list[dict] | None = None,
    performed_by: str | None = None,
    now=None,
) -> dict:
    """Replace an actor's facts and reconcile auto-detected conflicts."""
    now = now or utcnow()
    problems = []
    for d in disclosures or []:
        if d.get("kind") not in DISCLOSURE_KINDS:
            problems.append(f"Disclosure kind must be one of {sorted(DISCLOSURE_KINDS)}")
        if not d.get("organization_id"):
            problems.append("Every disclosure needs an organization_id")
    if problems:
        raise ValidationError("Invalid actor profile", details={"problems": problems})

    profile = _get_profile(actor_id)
    if profile is None:
        profile = ActorProfile(actor_id=actor_id)
        db.session.add(profile)
    profile.home_organization_id = home_organization_id
    if display_name is not None:
        profile.display_name = display_name

    if disclosures is not None:
        profile.disclosures.clear()
        for d in disclosures:
            profile.disclosures.append(ActorDisclosure(
                kind=d["kind"],
                organization_id=str(d["organization_id"]),
                description=d.get("description"),
                start_date=parse_date(d.get("start_date")),
                end_date=parse_date(d.get("end_date")),
            ))
    db.session.flush()

    result = sync_actor(actor_id, performed_by=performed_by, now=now, commit=False)
    db.session.commit()
    return {"profile": profile.to_dict(), "sync": result}


def sync_actor(actor_id: str, *, performed_by: str | None = None, now=None, commit: bool = True) -> dict:
    """
    Reconcile auto-detected conflicts with the actor's current facts.

    Idempotent: a second run with unchanged facts creates and ends nothing.
    """
    now = now or utcnow()
    detected = {c.key: c for c in detect_conflicts(get_actor_facts(actor_id), _rule_context(now))}

    existing = [
        c for c in db.session.execute(
            select(ReviewerCOI).where(ReviewerCOI.actor_id == actor_id, ReviewerCOI.is_active.is_(True))
        ).scalars()
        if c.is_current(now)
    ]
    auto_by_key = {(c.organization_id, c.coi_type): c for c in existing if c.is_auto_detected}
    manual_keys = {(c.organization_id, c.coi_type) for c in existing if not c.is_auto_detected}

    created, deactivated = [], []
    for key, coi in auto_by_key.items():
        if key not in detected:
            coi.is_active = False
            coi.end_date = now
            deactivated.append(coi)

    for key, conflict in detected.items():
        if key in auto_by_key or key in manual_keys:
            continue
        coi = ReviewerCOI(
            actor_id=actor_id,
            organization_id=conflict.organization_id,
            coi_type=conflict.coi_type,
            severity=DEFAULT_SEVERITY.get(conflict.coi_type, OVERRIDABLE),
            is_auto_detected=True,
            is_active=True,
            description=conflict.description,
            source_ref=conflict.source_ref,
            start_date=now,
        )
        db.session.add(coi)
        created.append(coi)
    db.session.flush()

    if created or deactivated:
        write_audit(
            entity_type="actor",
            entity_id=actor_id,
            action="coi.sync",
            actor=performed_by,
            before={"deactivated": [c.id for c in deactivated]},
            after={"created": [{"id": c.id, "organization_id": c.organization_id, "coi_type": c.coi_type}
                               for c in created]},
        )
        logger.info("COI sync for %s: %d created, %d deactivated", actor_id, len(created), len(deactivated),
                    extra={"actor_id": actor_id})
    if commit:
        db.session.commit()
    return {
        "created": [c.to_dict() for c in created],
        "deactivated": [c.to_dict() for c in deactivated],
        "unchanged": len(auto_by_key) - len(deactivated),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Manual declarations
# ═════════════════════════════════════════════════════════════════════════════

def declare_coi(
    actor_id: str,
    organization_id: str,
    coi_type: str,
    *,
    severity: str | None = None,
    description: str | None = None,
    declared_by: str | None = None,
    start_date=None,
    end_date=None,
    now=None,
) -> ReviewerCOI:
    now = now or utcnow()
    if coi_type not in COI_TYPES:
        raise ValidationError(f"coi_type must be one of {sorted(COI_TYPES)}")
    severity = severity or DEFAULT_SEVERITY[coi_type]
    if severity not in COI_SEVERITIES:
        raise ValidationError(f"severity must be one of {sorted(COI_SEVERITIES)}")
    if coi_type in ALWAYS_HARD_BLOCK and severity != HARD_BLOCK:
        raise ValidationError(f"{coi_type} conflicts are always {HARD_BLOCK}")

    start = parse_datetime(start_date) or now
    end = parse_datetime(end_date)
    if end is not None and end <= start:
        raise ValidationError("end_date must be after start_date")

    for existing in active_conflicts(actor_id, organization_id, now):
        if existing.coi_type == coi_type:
            raise ConflictError("ReviewerCOI", "actor/organization/type",
                                f"{actor_id}/{organization_id}/{coi_type}")

    coi = ReviewerCOI(
        actor_id=actor_id,
        organization_id=organization_id,
        coi_type=coi_type,
        severity=severity,
        is_auto_detected=False,
        is_active=True,
        description=description,
        declared_by=declared_by,
        start_date=start,
        end_date=end,
    )
    db.session.add(coi)
    db.session.flush()
    write_audit(
        entity_type="coi",
        entity_id=coi.id,
        action="coi.declare",
        actor=declared_by,
        organization_id=organization_id,
        after=coi.to_dict(),
    )
    db.session.commit()
    logger.info("COI declared: %s -> %s (%s/%s)", actor_id, organization_id, coi_type, severity,
                extra={"actor_id": actor_id, "organization_id": organization_id})
    return coi


def set_coi_severity(coi_id: int, severity: str, *, performed_by: str | None = None) -> ReviewerCOI:
    """Administrator escalation; fixed-severity types can never be lowered."""
    coi = get_coi(coi_id)
    if severity not in COI_SEVERITIES:
        raise ValidationError(f"severity must be one of {sorted(COI_SEVERITIES)}")
    if coi.coi_type in ALWAYS_HARD_BLOCK and severity != HARD_BLOCK:
        raise ValidationError(f"{coi.coi_type} conflicts are always {HARD_BLOCK}")

    before = coi.severity
    coi.severity = severity
    write_audit(
        entity_type="coi",
        entity_id=coi.id,
        action="coi.severity",
        actor=performed_by,
        organization_id=coi.organization_id,
        before={"severity": before},
        after={"severity": severity},
    )
    db.session.commit()
    return coi


def deactivate_coi(coi_id: int, *, reason: str | None = None, performed_by: str | None = None,
                   now=None) -> ReviewerCOI:
    """End-date a manually declared conflict."""
    now = now or utcnow()
    coi = get_coi(coi_id)
    if coi.is_auto_detected:
        raise ValidationError("Auto-detected conflicts are reconciled by sync, not deactivated by hand")
    if not coi.is_current(now):
        raise ValidationError("Conflict is already inactive")

    coi.is_active = False
    coi.end_date = now
    write_audit(
        entity_type="coi",
        entity_id=coi.id,
        action="coi.deactivate",
        actor=performed_by,
        organization_id=coi.organization_id,
        before={"is_active": True},
        after={"is_active": False, "reason": reason},
    )
    db.session.commit()
    return coi
