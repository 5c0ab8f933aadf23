"""
GRC Platform
Control exemption domain model.

An exemption is a time-bound, approved deviation from a control.  It carries
two statuses: ``approval_status`` (the shared two-stage workflow) and
``status`` (its business lifecycle: UNDER_REVIEW → ACTIVE → EXPIRED/REVOKED).
"""

from datetime import datetime, timezone

from grc.models import db
from grc.models.versioning import VersionedMixin

# ── Constants ────────────────────────────────────────────────────────────────

EXEMPTION_STATUS_UNDER_REVIEW = "UNDER_REVIEW"
EXEMPTION_STATUS_ACTIVE = "ACTIVE"
EXEMPTION_STATUS_EXPIRED = "EXPIRED"
EXEMPTION_STATUS_REVOKED = "REVOKED"

EXEMPTION_STATUSES = {
    EXEMPTION_STATUS_UNDER_REVIEW,
    EXEMPTION_STATUS_ACTIVE,
    EXEMPTION_STATUS_EXPIRED,
    EXEMPTION_STATUS_REVOKED,
}
EXEMPTION_TYPES = {"FULL", "PARTIAL"}


def _iso(value):
    return value.isoformat() if value else None


class Exemption(VersionedMixin, db.Model):
    __tablename__ = "exemptions"
    ENTITY_TYPE = "exemption"

    id = db.Column(db.Integer, primary_key=True)
    exemption_code = db.Column(db.String(20), nullable=False, comment="EX-001, sequential per organization")
    title = db.Column(db.String(300), nullable=False)
    control_ref_id = db.Column(
        db.Integer, db.ForeignKey("controls.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    exemption_type = db.Column(db.String(20), nullable=False, default="FULL")
    justification = db.Column(db.Text, nullable=False)
    risk_acceptance = db.Column(db.Text, nullable=True)
    compensating_controls = db.Column(db.Text, nullable=True)
    valid_from = db.Column(db.Date, nullable=True)
    valid_until = db.Column(db.Date, nullable=False)
    review_date = db.Column(db.Date, nullable=True)
    comments = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=EXEMPTION_STATUS_UNDER_REVIEW)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("organization_id", "exemption_code", name="uq_exemption_org_code"),
    )

    control = db.relationship("Control", lazy="joined")

    def is_effectively_expired(self, today=None) -> bool:
        """ACTIVE exemptions past ``valid_until`` count as expired without a write."""
        today = today or datetime.now(timezone.utc).date()
        if self.status == EXEMPTION_STATUS_EXPIRED:
            return True
        return self.status == EXEMPTION_STATUS_ACTIVE and self.valid_until is not None and self.valid_until <= today

    def to_dict(self):
        result = {
            "id": self.id,
            "exemption_code": self.exemption_code,
            "title": self.title,
            "control_ref_id": self.control_ref_id,
            "control": self.control.to_dict() if self.control else None,
            "requested_by_id": self.requested_by_id,
            "exemption_type": self.exemption_type,
            "justification": self.justification,
            "risk_acceptance": self.risk_acceptance,
            "compensating_controls": self.compensating_controls,
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
            "review_date": _iso(self.review_date),
            "comments": self.comments,
            "status": self.status,
            "revoked_at": _iso(self.revoked_at),
        }
        result.update(self._versioned_dict())
        return result

    def snapshot_payload(self):
        return self.to_dict()

    def __repr__(self):
        return f"<Exemption {self.exemption_code}: {self.status}/{self.approval_status}>"
