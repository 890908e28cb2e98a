"""
caseflow — Conflict-of-interest models.

Models:
    - ActorProfile: home organization of a reviewer-type actor
    - ActorDisclosure: declared relationship facts feeding auto-detection
    - ReviewerCOI: declared or auto-detected conflict with an organization
    - COIOverride: time-bounded administrative exception to an OVERRIDABLE COI
"""

from datetime import datetime, timezone

from caseflow.models import db
from caseflow.utils.helpers import as_utc, iso

# ── Constants ────────────────────────────────────────────────────────────────

HOME_ORGANIZATION = "HOME_ORGANIZATION"
FAMILY_RELATIONSHIP = "FAMILY_RELATIONSHIP"
RECENT_EMPLOYMENT = "RECENT_EMPLOYMENT"
FINANCIAL_INTEREST = "FINANCIAL_INTEREST"
RECENT_REVIEW = "RECENT_REVIEW"
OTHER = "OTHER"

COI_TYPES = {
    HOME_ORGANIZATION, FAMILY_RELATIONSHIP, RECENT_EMPLOYMENT,
    FINANCIAL_INTEREST, RECENT_REVIEW, OTHER,
}

HARD_BLOCK = "HARD_BLOCK"
OVERRIDABLE = "OVERRIDABLE"
COI_SEVERITIES = {HARD_BLOCK, OVERRIDABLE}

# Types whose severity is fixed and can never be lowered.
ALWAYS_HARD_BLOCK = {HOME_ORGANIZATION, FAMILY_RELATIONSHIP}

DEFAULT_SEVERITY = {
    HOME_ORGANIZATION: HARD_BLOCK,
    FAMILY_RELATIONSHIP: HARD_BLOCK,
    RECENT_EMPLOYMENT: OVERRIDABLE,
    FINANCIAL_INTEREST: OVERRIDABLE,
    RECENT_REVIEW: OVERRIDABLE,
    OTHER: OVERRIDABLE,
}

DISCLOSURE_KINDS = {"FAMILY", "EMPLOYMENT", "FINANCIAL", "REVIEW_PARTICIPATION"}


def _now():
    return datetime.now(timezone.utc)


def override_scope_key(actor_id: str, organization_id: str, entity_id: str | None) -> str:
    return f"{actor_id}:{organization_id}:{entity_id or '*'}"


class ActorProfile(db.Model):
    __tablename__ = "actor_profiles"

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(64), nullable=False, unique=True)
    display_name = db.Column(db.String(200), nullable=True)
    home_organization_id = db.Column(db.String(64), nullable=True, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    disclosures = db.relationship(
        "ActorDisclosure", backref="profile", lazy="selectin",
        cascade="all, delete-orphan", order_by="ActorDisclosure.id",
    )

    def to_dict(self) -> dict:
        return {
            "actor_id": self.actor_id,
            "display_name": self.display_name,
            "home_organization_id": self.home_organization_id,
            "disclosures": [d.to_dict() for d in self.disclosures],
            "updated_at": iso(self.updated_at),
        }


class ActorDisclosure(db.Model):
    """
    One relationship fact: FAMILY | EMPLOYMENT | FINANCIAL | REVIEW_PARTICIPATION.

    ``end_date`` NULL means the relationship is ongoing.
    """

    __tablename__ = "actor_disclosures"

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(
        db.Integer, db.ForeignKey("actor_profiles.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    kind = db.Column(db.String(30), nullable=False)
    organization_id = db.Column(db.String(64), nullable=False, index=True)
    description = db.Column(db.String(500), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "organization_id": self.organization_id,
            "description": self.description,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }


class ReviewerCOI(db.Model):
    """
    Conflict between an actor and an organization.

    Active while ``is_active`` and the date range covers now. Sync end-dates
    auto-detected rows whose fact no longer holds; manual rows are only
    changed by an administrator.
    """

    __tablename__ = "reviewer_cois"
    __table_args__ = (
        db.Index("ix_coi_actor_org", "actor_id", "organization_id", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(64), nullable=False)
    organization_id = db.Column(db.String(64), nullable=False)
    coi_type = db.Column(db.String(40), nullable=False)
    severity = db.Column(db.String(20), nullable=False, default=OVERRIDABLE,
                         comment="HARD_BLOCK | OVERRIDABLE")
    is_auto_detected = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    description = db.Column(db.Text, nullable=True)
    source_ref = db.Column(db.String(120), nullable=True,
                           comment="Rule fact key that produced an auto-detected row")
    declared_by = db.Column(db.String(64), nullable=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def is_current(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        start = as_utc(self.start_date)
        end = as_utc(self.end_date)
        if start and start > now:
            return False
        return end is None or end > now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "organization_id": self.organization_id,
            "coi_type": self.coi_type,
            "severity": self.severity,
            "is_auto_detected": self.is_auto_detected,
            "is_active": self.is_active,
            "description": self.description,
            "source_ref": self.source_ref,
            "declared_by": self.declared_by,
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
        }

    def __repr__(self):
        return f"<ReviewerCOI {self.id}: {self.actor_id}->{self.organization_id} {self.coi_type}/{self.severity}>"


class COIOverride(db.Model):
    """
    Administrative grant to act despite an OVERRIDABLE conflict.

    ``active_scope_key`` holds ``actor:org:entity-or-*`` while the override is
    live and is cleared on revocation or expiry release; the unique index is
    what serializes concurrent creation for the same scope.
    """

    __tablename__ = "coi_overrides"
    __table_args__ = (
        db.Index("ix_coi_override_actor_org", "actor_id", "organization_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(64), nullable=False)
    organization_id = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True,
                          comment="NULL = covers every entity of the organization")
    justification = db.Column(db.Text, nullable=False)
    approved_by = db.Column(db.String(64), nullable=False)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_by = db.Column(db.String(64), nullable=True)
    revoke_reason = db.Column(db.Text, nullable=True)
    active_scope_key = db.Column(db.String(220), nullable=True, unique=True)

    def is_active_at(self, now: datetime) -> bool:
        if self.revoked_at is not None:
            return False
        expires = as_utc(self.expires_at)
        return expires is None or expires > now

    def to_dict(self, now: datetime | None = None) -> dict:
        now = now or _now()
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "organization_id": self.organization_id,
            "entity_id": self.entity_id,
            "justification": self.justification,
            "approved_by": self.approved_by,
            "approved_at": iso(self.approved_at),
            "expires_at": iso(self.expires_at),
            "revoked_at": iso(self.revoked_at),
            "revoked_by": self.revoked_by,
            "revoke_reason": self.revoke_reason,
            "is_active": self.is_active_at(now),
        }

    def __repr__(self):
        return f"<COIOverride {self.id}: {self.actor_id}->{self.organization_id}/{self.entity_id or '*'}>"
