"""
GRC Platform
Risk register domain models.

Models:
    - Risk: one risk in an organization's register, under two-stage approval
    - RiskTreatment: a treatment decision with the residual rating it produces
    - RiskRetirement: the record written when a risk is retired (one per risk)
    - RiskControl: link from a risk to an Annex A control that treats it
"""

from datetime import datetime, timezone

from grc.models import db
from grc.models.versioning import VersionedMixin

# ── Constants ────────────────────────────────────────────────────────────────

RISK_STATUSES = {"IDENTIFIED", "ANALYZING", "TREATING", "MONITORING", "CLOSED"}
RISK_TREATMENTS = {"ACCEPT", "MITIGATE", "TRANSFER", "AVOID", "PENDING"}
RISK_RESPONSES = {"ACCEPT", "MITIGATE", "TRANSFER", "AVOID"}

SCORE_MIN = 1
SCORE_MAX = 5


def _iso(value):
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════
# 1. RISKS
# ═══════════════════════════════════════════════════════════════
class Risk(VersionedMixin, db.Model):
    """
    Risk register entry.

    inherent_risk is stored, and every write path recomputes it as
    likelihood × impact before flushing.
    """

    __tablename__ = "risks"
    ENTITY_TYPE = "risk"

    id = db.Column(db.Integer, primary_key=True)
    risk_code = db.Column(db.String(20), nullable=False, comment="RISK-001, sequential per organization")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(100), nullable=True)

    likelihood = db.Column(db.Integer, nullable=False, default=3)
    impact = db.Column(db.Integer, nullable=False, default=3)
    inherent_risk = db.Column(db.Integer, nullable=False, default=9, comment="likelihood × impact")

    residual_probability = db.Column(db.Integer, nullable=True)
    residual_impact = db.Column(db.Integer, nullable=True)
    residual_risk = db.Column(db.Integer, nullable=True)

    control_description = db.Column(db.Text, nullable=True)
    controls_reference = db.Column(db.String(500), nullable=True)
    treatment = db.Column(db.String(20), nullable=False, default="PENDING")
    treatment_plan = db.Column(db.Text, nullable=True)
    treatment_due_date = db.Column(db.Date, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="IDENTIFIED")
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    identified_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    last_reviewed_on = db.Column(db.Date, nullable=True)
    comments = db.Column(db.Text, nullable=True)

    is_retired = db.Column(db.Boolean, nullable=False, default=False)
    retirement_date = db.Column(db.DateTime(timezone=True), nullable=True)
    retirement_reason = db.Column(db.Text, nullable=True)

    __table_args__ = (
        db.UniqueConstraint("organization_id", "risk_code", name="uq_risk_org_code"),
        db.Index("ix_risk_org_approval", "organization_id", "approval_status"),
    )

    treatments = db.relationship(
        "RiskTreatment", backref="risk", lazy="select",
        cascade="all, delete-orphan", order_by="RiskTreatment.id",
    )
    retirement = db.relationship(
        "RiskRetirement", backref="risk", uselist=False, cascade="all, delete-orphan",
    )
    control_links = db.relationship(
        "RiskControl", backref="risk", lazy="select",
        cascade="all, delete-orphan", order_by="RiskControl.id",
    )

    def recompute_scores(self):
        self.inherent_risk = (self.likelihood or 0) * (self.impact or 0)
        if self.residual_probability and self.residual_impact:
            self.residual_risk = self.residual_probability * self.residual_impact

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "risk_code": self.risk_code,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "likelihood": self.likelihood,
            "impact": self.impact,
            "inherent_risk": self.inherent_risk,
            "residual_probability": self.residual_probability,
            "residual_impact": self.residual_impact,
            "residual_risk": self.residual_risk,
            "control_description": self.control_description,
            "controls_reference": self.controls_reference,
            "treatment": self.treatment,
            "treatment_plan": self.treatment_plan,
            "treatment_due_date": _iso(self.treatment_due_date),
            "status": self.status,
            "owner_id": self.owner_id,
            "identified_at": _iso(self.identified_at),
            "last_reviewed_on": _iso(self.last_reviewed_on),
            "comments": self.comments,
            "is_retired": self.is_retired,
            "retirement_date": _iso(self.retirement_date),
            "retirement_reason": self.retirement_reason,
            "linked_controls": [link.to_dict() for link in self.control_links],
        }
        result.update(self._versioned_dict())
        if include_children:
            result["treatments"] = [t.to_dict() for t in self.treatments]
            result["retirement"] = self.retirement.to_dict() if self.retirement else None
        return result

    def snapshot_payload(self):
        return self.to_dict(include_children=True)

    def __repr__(self):
        return f"<Risk {self.risk_code}: {self.title[:40]}>"


# ═══════════════════════════════════════════════════════════════
# 2. TREATMENTS
# ═══════════════════════════════════════════════════════════════
class RiskTreatment(db.Model):
    __tablename__ = "risk_treatments"

    id = db.Column(db.Integer, primary_key=True)
    risk_id = db.Column(db.Integer, db.ForeignKey("risks.id", ondelete="CASCADE"), nullable=False, index=True)
    residual_probability = db.Column(db.Integer, nullable=False)
    residual_impact = db.Column(db.Integer, nullable=False)
    residual_risk = db.Column(db.Integer, nullable=False)
    risk_response = db.Column(db.String(20), nullable=False)
    control_description = db.Column(db.Text, nullable=True)
    control_implementation_date = db.Column(db.DateTime(timezone=True), nullable=True)
    treatment_days = db.Column(db.Integer, nullable=True, comment="Days from identification to implementation")
    comments = db.Column(db.Text, nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "risk_id": self.risk_id,
            "residual_probability": self.residual_probability,
            "residual_impact": self.residual_impact,
            "residual_risk": self.residual_risk,
            "risk_response": self.risk_response,
            "control_description": self.control_description,
            "control_implementation_date": _iso(self.control_implementation_date),
            "treatment_days": self.treatment_days,
            "comments": self.comments,
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
        }


# ═══════════════════════════════════════════════════════════════
# 3. RETIREMENTS
# ═══════════════════════════════════════════════════════════════
class RiskRetirement(db.Model):
    __tablename__ = "risk_retirements"

    id = db.Column(db.Integer, primary_key=True)
    risk_id = db.Column(
        db.Integer, db.ForeignKey("risks.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    reason = db.Column(db.Text, nullable=False)
    retired_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    retired_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "risk_id": self.risk_id,
            "reason": self.reason,
            "retired_by_id": self.retired_by_id,
            "retired_at": _iso(self.retired_at),
        }


# ═══════════════════════════════════════════════════════════════
# 4. CONTROL LINKS
# ═══════════════════════════════════════════════════════════════
class RiskControl(db.Model):
    """Annex A control treating a risk; one row per risk/control pair."""

    __tablename__ = "risk_controls"

    id = db.Column(db.Integer, primary_key=True)
    risk_id = db.Column(db.Integer, db.ForeignKey("risks.id", ondelete="CASCADE"), nullable=False)
    control_ref_id = db.Column(
        db.Integer, db.ForeignKey("controls.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("risk_id", "control_ref_id", name="uq_risk_control"),
    )

    control = db.relationship("Control", lazy="joined")

    def to_dict(self):
        return {
            "id": self.control_ref_id,
            "control_id": self.control.control_id if self.control else None,
            "name": self.control.name if self.control else None,
            "implementation_status": self.control.implementation_status if self.control else None,
        }
