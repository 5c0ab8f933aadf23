"""
GRC Platform
Statement of Applicability domain models.

Models:
    - Control: an ISO 27001 Annex A control tracked by an organization
    - SoAEntry: the organization's applicability decision for one control,
      under two-stage approval
"""

from datetime import datetime, timezone

from grc.models import db
from grc.models.versioning import VersionedMixin

# ── Constants ────────────────────────────────────────────────────────────────

CONTROL_CATEGORIES = {"A5_ORGANIZATIONAL", "A6_PEOPLE", "A7_PHYSICAL", "A8_TECHNOLOGICAL"}
IMPLEMENTATION_STATUSES = {
    "NOT_IMPLEMENTED", "PARTIALLY_IMPLEMENTED", "FULLY_IMPLEMENTED", "NOT_APPLICABLE",
}
SOA_STATUSES = {"NOT_STARTED", "IN_PROGRESS", "IMPLEMENTED"}
CONTROL_SOURCES = {"ANNEX_A", "CUSTOM"}


def _iso(value):
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════
# 1. CONTROLS
# ═══════════════════════════════════════════════════════════════
class Control(db.Model):
    __tablename__ = "controls"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    control_id = db.Column(db.String(20), nullable=False, comment="Annex A reference, e.g. A.5.1")
    name = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(30), nullable=False, default="A5_ORGANIZATIONAL")
    implementation_status = db.Column(db.String(30), nullable=False, default="NOT_IMPLEMENTED")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("organization_id", "control_id", name="uq_control_org_ref"),
    )

    soa_entry = db.relationship("SoAEntry", back_populates="control", uselist=False)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "control_id": self.control_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "implementation_status": self.implementation_status,
        }


# ═══════════════════════════════════════════════════════════════
# 2. SOA ENTRIES
# ═══════════════════════════════════════════════════════════════
class SoAEntry(VersionedMixin, db.Model):
    __tablename__ = "soa_entries"
    ENTITY_TYPE = "soa_entry"

    id = db.Column(db.Integer, primary_key=True)
    control_ref_id = db.Column(
        db.Integer, db.ForeignKey("controls.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    is_applicable = db.Column(db.Boolean, nullable=False, default=True)
    justification = db.Column(db.Text, nullable=True)
    exclusion_reason = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="NOT_STARTED")
    control_owner = db.Column(db.String(200), nullable=True)
    documentation_references = db.Column(db.Text, nullable=True)
    control_source = db.Column(db.String(20), nullable=False, default="ANNEX_A")
    comments = db.Column(db.Text, nullable=True)

    control = db.relationship("Control", back_populates="soa_entry", lazy="joined")

    def to_dict(self):
        result = {
            "id": self.id,
            "control_ref_id": self.control_ref_id,
            "control": self.control.to_dict() if self.control else None,
            "is_applicable": self.is_applicable,
            "justification": self.justification,
            "exclusion_reason": self.exclusion_reason,
            "status": self.status,
            "control_owner": self.control_owner,
            "documentation_references": self.documentation_references,
            "control_source": self.control_source,
            "comments": self.comments,
        }
        result.update(self._versioned_dict())
        return result

    def snapshot_payload(self):
        return self.to_dict()

    def __repr__(self):
        ref = self.control.control_id if self.control else self.control_ref_id
        return f"<SoAEntry {ref} {self.approval_status}>"
