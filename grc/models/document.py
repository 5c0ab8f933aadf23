"""
GRC Platform
Organization-level controlled documents.

Models:
    - RiskRegisterDocument: cover document for the organization's risk register
    - SoADocument: cover document for the Statement of Applicability

Each organization has at most one of each.  Both go through the same
two-stage approval as individual entities, but the gates are the designated
``reviewer_id`` / ``approver_id`` rather than member roles, and they support
explicit new-revision / discard-revision.
"""

from sqlalchemy.orm import declared_attr

from grc.models import db
from grc.models.versioning import VersionedMixin

DEFAULT_CLASSIFICATION = "Internal"


class _OrganizationDocumentMixin(VersionedMixin):
    """Columns shared by both document kinds."""

    DEFAULT_TITLE = None

    title = db.Column(db.String(300), nullable=False)
    identification = db.Column(db.String(100), nullable=True, comment="Document code, e.g. ISMS-RR-001")
    classification = db.Column(db.String(50), nullable=False, default=DEFAULT_CLASSIFICATION)
    purpose = db.Column(db.Text, nullable=True)
    scope = db.Column(db.Text, nullable=True)

    @declared_attr
    def reviewer_id(cls):
        return db.Column(
            db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
            comment="Designated first-level approver",
        )

    @declared_attr
    def approver_id(cls):
        return db.Column(
            db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
            comment="Designated second-level approver",
        )

    def to_dict(self):
        result = {
            "id": self.id,
            "title": self.title,
            "identification": self.identification,
            "classification": self.classification,
            "purpose": self.purpose,
            "scope": self.scope,
            "reviewer_id": self.reviewer_id,
            "approver_id": self.approver_id,
        }
        result.update(self._versioned_dict())
        return result

    def snapshot_payload(self):
        return self.to_dict()


class RiskRegisterDocument(_OrganizationDocumentMixin, db.Model):
    __tablename__ = "risk_register_documents"
    ENTITY_TYPE = "risk_register_document"
    DEFAULT_TITLE = "Risk Register"

    id = db.Column(db.Integer, primary_key=True)

    __table_args__ = (
        db.UniqueConstraint("organization_id", name="uq_risk_register_document_org"),
    )

    def __repr__(self):
        return f"<RiskRegisterDocument org={self.organization_id} v{self.version}>"


class SoADocument(_OrganizationDocumentMixin, db.Model):
    __tablename__ = "soa_documents"
    ENTITY_TYPE = "soa_document"
    DEFAULT_TITLE = "Statement of Applicability"

    id = db.Column(db.Integer, primary_key=True)

    __table_args__ = (
        db.UniqueConstraint("organization_id", name="uq_soa_document_org"),
    )

    def __repr__(self):
        return f"<SoADocument org={self.organization_id} v{self.version}>"
