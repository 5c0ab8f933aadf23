"""
GRC Platform
Versioning primitives shared by every approvable entity.

Models:
    - VersionedMixin: columns common to Risk, SoAEntry, Exemption and the
      organization documents (status, version, optimistic-lock counter)
    - VersionSnapshot: point-in-time record of an entity at a lifecycle action

Polymorphic reference pattern:
    entity_type + entity_id together identify the versioned row.
    entity_id is stored as String(64) and serialised with str().
"""

import json
from datetime import datetime, timezone

from sqlalchemy.orm import declared_attr

from grc.models import db
from grc.services.version_numbers import Version

# ── Approval states ──────────────────────────────────────────────────────────


class ApprovalStatus:
    DRAFT = "DRAFT"
    PENDING_FIRST_APPROVAL = "PENDING_FIRST_APPROVAL"
    PENDING_SECOND_APPROVAL = "PENDING_SECOND_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CLOSED = "CLOSED"

    ALL = frozenset({
        DRAFT, PENDING_FIRST_APPROVAL, PENDING_SECOND_APPROVAL, APPROVED, REJECTED, CLOSED,
    })
    PENDING = frozenset({PENDING_FIRST_APPROVAL, PENDING_SECOND_APPROVAL})


# ── Snapshot action labels ───────────────────────────────────────────────────

SNAPSHOT_DRAFT_AND_REVIEW = "Draft & Review"
SNAPSHOT_SUBMITTED = "Submitted for Review"
SNAPSHOT_REJECTED = "Rejected"
SNAPSHOT_RISK_RETIRED = "Risk Retired"
SNAPSHOT_REVOKED = "Revoked"
SNAPSHOT_RENEWAL = "Renewal Request"

VALID_SNAPSHOT_ACTIONS = frozenset({
    SNAPSHOT_DRAFT_AND_REVIEW,
    SNAPSHOT_SUBMITTED,
    SNAPSHOT_REJECTED,
    SNAPSHOT_RISK_RETIRED,
    SNAPSHOT_REVOKED,
    SNAPSHOT_RENEWAL,
})


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class VersionedMixin:
    """
    Columns and helpers every approvable entity carries.

    ``row_version`` is SQLAlchemy's ``version_id_col`` for every subclass, so an
    UPDATE issued against a row that someone else changed in the meantime
    raises ``StaleDataError`` at flush.
    """

    #: label written to snapshots / audit rows, e.g. "risk"
    ENTITY_TYPE = None

    @declared_attr
    def organization_id(cls):
        return db.Column(
            db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False, index=True,
        )

    @declared_attr
    def created_by_id(cls):
        return db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    approval_status = db.Column(db.String(30), nullable=False, default=ApprovalStatus.DRAFT)
    version_tenths = db.Column(db.Integer, nullable=False, default=1, comment="Version x10 (0.1 → 1)")
    row_version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @declared_attr
    def __mapper_args__(cls):
        return {"version_id_col": cls.row_version}

    @property
    def version(self) -> Version:
        return Version(self.version_tenths or 0)

    @version.setter
    def version(self, value):
        self.version_tenths = Version.parse(value).tenths

    def _versioned_dict(self) -> dict:
        return {
            "organization_id": self.organization_id,
            "approval_status": self.approval_status,
            "version": str(self.version),
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class VersionSnapshot(db.Model):
    """
    Point-in-time record of a versioned entity.

    Business rules:
    - (entity_type, entity_id, version_tenths) is unique; writing the same key
      twice updates the row instead of adding a second one.
    - ``payload_json`` is a serialised copy of the entity, not a reference, so
      the history stays valid after later edits.
    - ``change_description`` is the only field users may correct afterwards.
    """

    __tablename__ = "version_snapshots"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    # Polymorphic entity identification
    entity_type = db.Column(
        db.String(50), nullable=False,
        comment="risk | soa_entry | exemption | risk_register_document | soa_document",
    )
    entity_id = db.Column(db.String(64), nullable=False)

    version_tenths = db.Column(db.Integer, nullable=False)
    change_description = db.Column(db.Text, nullable=False, default="")
    actor = db.Column(db.String(255), nullable=False, default="system", comment="Display name at action time")
    actor_designation = db.Column(db.String(150), nullable=True)
    action = db.Column(db.String(50), nullable=False, comment="Draft & Review | Submitted for Review | …")

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    payload_json = db.Column(db.Text, nullable=False, default="{}")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint(
            "entity_type", "entity_id", "version_tenths", name="uq_version_snapshot_entity_version",
        ),
        db.Index("ix_version_snapshot_entity", "entity_type", "entity_id"),
    )

    @property
    def version(self) -> Version:
        return Version(self.version_tenths)

    @property
    def payload(self) -> dict:
        """Decoded field copy; a corrupt payload raises rather than restoring nothing."""
        return json.loads(self.payload_json) if self.payload_json else {}

    def to_dict(self, include_payload: bool = False) -> dict:
        result = {
            "id": self.id,
            "organization_id": self.organization_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "version": str(self.version),
            "change_description": self.change_description,
            "actor": self.actor,
            "actor_designation": self.actor_designation,
            "action": self.action,
            "created_by_id": self.created_by_id,
            "approved_by_id": self.approved_by_id,
            "created_at": _iso(self.created_at),
        }
        if include_payload:
            result["payload"] = self.payload
        return result

    def __repr__(self) -> str:
        return f"<VersionSnapshot {self.entity_type}/{self.entity_id} v{self.version} {self.action}>"
