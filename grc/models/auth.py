"""
GRC Platform
Identity & membership models.

Models:
    - Organization: the tenant that owns risks, SoA entries, exemptions, documents
    - User: platform user with an optional global role
    - OrganizationMember: User ↔ Organization assignment with a member role

Authentication lives upstream; these tables only answer "who is this actor
and what role do they hold in which organization".
"""

from datetime import datetime, timezone

from grc.models import db

# ── Roles ────────────────────────────────────────────────────────────────────

ROLE_ADMIN = "ADMIN"
ROLE_LOCAL_ADMIN = "LOCAL_ADMIN"
ROLE_AUDITOR = "AUDITOR"
ROLE_USER = "USER"
ROLE_VIEWER = "VIEWER"

VALID_ROLES = frozenset({ROLE_ADMIN, ROLE_LOCAL_ADMIN, ROLE_AUDITOR, ROLE_USER, ROLE_VIEWER})


# ═══════════════════════════════════════════════════════════════
# 1. ORGANIZATIONS
# ═══════════════════════════════════════════════════════════════
class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    members = db.relationship(
        "OrganizationMember", back_populates="organization", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    first_name = db.Column(db.String(100), nullable=False, default="")
    last_name = db.Column(db.String(100), nullable=False, default="")
    designation = db.Column(db.String(150), nullable=True, comment="Job title shown on version history")
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER, comment="Global role; ADMIN bypasses org gates")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    memberships = db.relationship(
        "OrganizationMember", back_populates="user", lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "designation": self.designation,
            "role": self.role,
            "is_active": self.is_active,
        }


# ═══════════════════════════════════════════════════════════════
# 3. ORGANIZATION_MEMBERS
# ═══════════════════════════════════════════════════════════════
class OrganizationMember(db.Model):
    __tablename__ = "organization_members"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)
    joined_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("organization_id", "user_id", name="uq_organization_member"),
        db.Index("ix_organization_members_user", "user_id"),
    )

    organization = db.relationship("Organization", back_populates="members")
    user = db.relationship("User", back_populates="memberships")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "role": self.role,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
        }
