"""
COI Override Manager.

An override lets one actor act on one organization (optionally one entity)
despite OVERRIDABLE conflicts. Hard blocks are never overridable.

At most one active override exists per (actor, organization, entity-or-*)
scope; the unique ``active_scope_key`` column enforces it, so two concurrent
creates cannot both succeed.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from caseflow.core.exceptions import InvalidOverrideError, NotFoundError, ValidationError
from caseflow.models import db
from caseflow.models.audit import write_audit
from caseflow.models.coi import HARD_BLOCK, OVERRIDABLE, COIOverride, override_scope_key
from caseflow.services.coi_service import active_conflicts
from caseflow.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)


def find_active_override(actor_id: str, organization_id: str, *, entity_id: str | None = None,
                         now=None) -> COIOverride | None:
    """Active override covering the scope; an entity-specific grant wins over an org-wide one."""
    now = now or utcnow()
    scopes = [COIOverride.entity_id.is_(None)]
    if entity_id is not None:
        scopes.append(COIOverride.entity_id == entity_id)
    rows = db.session.execute(
        select(COIOverride)
        .where(
            COIOverride.actor_id == actor_id,
            COIOverride.organization_id == organization_id,
            COIOverride.revoked_at.is_(None),
            or_(*scopes),
        )
        .order_by(COIOverride.approved_at.desc(), COIOverride.id.desc())
    ).scalars()
    candidates = [o for o in rows if o.is_active_at(now)]
    candidates.sort(key=lambda o: o.entity_id is None)
    return candidates[0] if candidates else None


def get_override(override_id: int) -> COIOverride:
    override = db.session.get(COIOverride, override_id)
    if override is None:
        raise NotFoundError(resource="COIOverride", resource_id=override_id)
    return override


def list_overrides(actor_id: str | None = None, organization_id: str | None = None,
                   active_only: bool = False, now=None) -> list[COIOverride]:
    now = now or utcnow()
    stmt = select(COIOverride).order_by(COIOverride.approved_at.desc(), COIOverride.id.desc())
    if actor_id:
        stmt = stmt.where(COIOverride.actor_id == actor_id)
    if organization_id:
        stmt = stmt.where(COIOverride.organization_id == organization_id)
    rows = list(db.session.execute(stmt).scalars())
    if active_only:
        rows = [o for o in rows if o.is_active_at(now)]
    return rows


def _release_expired(scope_key: str, now) -> None:
    """Free the scope key held by an override that has since expired."""
    holder = db.session.execute(
        select(COIOverride).where(COIOverride.active_scope_key == scope_key)
    ).scalar_one_or_none()
    if holder is not None and not holder.is_active_at(now):
        holder.active_scope_key = None
        db.session.flush()


def create_override(
    actor_id: str,
    organization_id: str,
    justification: str,
    approver_id: str,
    *,
    expires_at=None,
    entity_id: str | None = None,
    now=None,
) -> COIOverride:
    now = now or utcnow()
    justification = (justification or "").strip()
    min_len = current_app.config.get("COI_MIN_OVERRIDE_JUSTIFICATION", 20)
    if len(justification) < min_len:
        raise ValidationError(f"Justification must be at least {min_len} characters")

    expires = None
    if expires_at is not None:
        expires = parse_datetime(expires_at)
        if expires is None:
            raise ValidationError("expires_at must be an ISO-8601 datetime")
        if expires <= now:
            raise ValidationError("expires_at must be in the future")

    conflicts = active_conflicts(actor_id, organization_id, now)
    hard = [c for c in conflicts if c.severity == HARD_BLOCK]
    if hard:
        raise InvalidOverrideError(
            "Hard-block conflicts cannot be overridden; remove the actor from consideration",
            details={"hard_blocks": [c.to_dict() for c in hard]},
        )
    if not any(c.severity == OVERRIDABLE for c in conflicts):
        raise InvalidOverrideError(
            "Actor has no active overridable conflict with this organization",
            details={"actor_id": actor_id, "organization_id": organization_id},
        )

    scope_key = override_scope_key(actor_id, organization_id, entity_id)
    _release_expired(scope_key, now)
    existing = db.session.execute(
        select(COIOverride).where(COIOverride.active_scope_key == scope_key)
    ).scalar_one_or_none()
    if existing is not None:
        raise InvalidOverrideError(
            "An active override already covers this scope",
            details={"override_id": existing.id},
        )

    override = COIOverride(
        actor_id=actor_id,
        organization_id=organization_id,
        entity_id=entity_id,
        justification=justification,
        approved_by=approver_id,
        approved_at=now,
        expires_at=expires,
        active_scope_key=scope_key,
    )
    db.session.add(override)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise InvalidOverrideError(
            "An active override already covers this scope",
            details={"scope": scope_key},
        )

    write_audit(
        entity_type="coi_override",
        entity_id=override.id,
        action="coi.override_create",
        actor=approver_id,
        organization_id=organization_id,
        before={"active_override": None},
        after=override.to_dict(now),
    )
    db.session.commit()
    logger.info("COI override %d granted: %s -> %s/%s", override.id, actor_id, organization_id, entity_id or "*",
                extra={"actor_id": actor_id, "organization_id": organization_id, "override_id": override.id})
    return override


def revoke_override(override_id: int, reason: str, revoked_by: str, *, now=None) -> COIOverride:
    now = now or utcnow()
    if not (reason or "").strip():
        raise ValidationError("A revocation reason is required")
    override = get_override(override_id)
    if override.revoked_at is not None:
        raise InvalidOverrideError("Override is already revoked", details={"override_id": override_id})

    before = override.to_dict(now)
    override.revoked_at = now
    override.revoked_by = revoked_by
    override.revoke_reason = reason.strip()
    override.active_scope_key = None

    write_audit(
        entity_type="coi_override",
        entity_id=override.id,
        action="coi.override_revoke",
        actor=revoked_by,
        organization_id=override.organization_id,
        before=before,
        after=override.to_dict(now),
    )
    db.session.commit()
    logger.info("COI override %d revoked", override.id,
                extra={"actor_id": override.actor_id, "override_id": override.id})
    return override
