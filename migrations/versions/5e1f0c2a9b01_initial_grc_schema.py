"""initial_grc_schema

Creates the GRC approval & versioning schema:
  - organizations, users, organization_members      — identity & membership
  - controls, soa_entries                           — Statement of Applicability
  - risks, risk_treatments, risk_retirements        — risk register
  - exemptions                                      — time-bound control exemptions
  - risk_register_documents, soa_documents          — organization cover documents
  - version_snapshots                               — per-version history of every entity
  - audit_logs, notifications

Tables are created conditionally so the migration can run against a database
that already received them via db.create_all() in development.

Revision ID: 5e1f0c2a9b01
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5e1f0c2a9b01"
down_revision = None
branch_labels = None
depends_on = None


def _versioned_columns():
    """Columns shared by every approvable table (VersionedMixin)."""
    return [
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("approval_status", sa.String(length=30), nullable=False, server_default="DRAFT"),
        sa.Column("version_tenths", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
    ]


def _document_columns():
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("identification", sa.String(length=100), nullable=True),
        sa.Column("classification", sa.String(length=50), nullable=False, server_default="Internal"),
        sa.Column("purpose", sa.Text(), nullable=True),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("reviewer_id", sa.Integer(), nullable=True),
        sa.Column("approver_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["reviewer_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["approver_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        *_versioned_columns(),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Identity ──────────────────────────────────────────────────────────
    if "organizations" not in existing:
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False, server_default=""),
            sa.Column("last_name", sa.String(length=100), nullable=False, server_default=""),
            sa.Column("designation", sa.String(length=150), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="USER"),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "organization_members" not in existing:
        op.create_table(
            "organization_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="USER"),
            sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "user_id", name="uq_organization_member"),
        )
        op.create_index("ix_organization_members_user", "organization_members", ["user_id"])

    # ── Statement of Applicability ────────────────────────────────────────
    if "controls" not in existing:
        op.create_table(
            "controls",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("control_id", sa.String(length=20), nullable=False),
            sa.Column("name", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=False, server_default="A5_ORGANIZATIONAL"),
            sa.Column("implementation_status", sa.String(length=30), nullable=False,
                      server_default="NOT_IMPLEMENTED"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "control_id", name="uq_control_org_ref"),
        )
        op.create_index("ix_controls_organization_id", "controls", ["organization_id"])

    if "soa_entries" not in existing:
        op.create_table(
            "soa_entries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("control_ref_id", sa.Integer(), nullable=False),
            sa.Column("is_applicable", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("justification", sa.Text(), nullable=True),
            sa.Column("exclusion_reason", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="NOT_STARTED"),
            sa.Column("control_owner", sa.String(length=200), nullable=True),
            sa.Column("documentation_references", sa.Text(), nullable=True),
            sa.Column("control_source", sa.String(length=20), nullable=False, server_default="ANNEX_A"),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["control_ref_id"], ["controls.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("control_ref_id"),
            *_versioned_columns(),
        )
        op.create_index("ix_soa_entries_organization_id", "soa_entries", ["organization_id"])

    # ── Risk register ─────────────────────────────────────────────────────
    if "risks" not in existing:
        op.create_table(
            "risks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("risk_code", sa.String(length=20), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column("likelihood", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("impact", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("inherent_risk", sa.Integer(), nullable=False, server_default="9"),
            sa.Column("residual_probability", sa.Integer(), nullable=True),
            sa.Column("residual_impact", sa.Integer(), nullable=True),
            sa.Column("residual_risk", sa.Integer(), nullable=True),
            sa.Column("control_description", sa.Text(), nullable=True),
            sa.Column("controls_reference", sa.String(length=500), nullable=True),
            sa.Column("treatment", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("treatment_plan", sa.Text(), nullable=True),
            sa.Column("treatment_due_date", sa.Date(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="IDENTIFIED"),
            sa.Column("owner_id", sa.Integer(), nullable=True),
            sa.Column("identified_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_reviewed_on", sa.Date(), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("is_retired", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("retirement_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("retirement_reason", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "risk_code", name="uq_risk_org_code"),
            *_versioned_columns(),
        )
        op.create_index("ix_risks_organization_id", "risks", ["organization_id"])
        op.create_index("ix_risk_org_approval", "risks", ["organization_id", "approval_status"])

    if "risk_treatments" not in existing:
        op.create_table(
            "risk_treatments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("risk_id", sa.Integer(), nullable=False),
            sa.Column("residual_probability", sa.Integer(), nullable=False),
            sa.Column("residual_impact", sa.Integer(), nullable=False),
            sa.Column("residual_risk", sa.Integer(), nullable=False),
            sa.Column("risk_response", sa.String(length=20), nullable=False),
            sa.Column("control_description", sa.Text(), nullable=True),
            sa.Column("control_implementation_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("treatment_days", sa.Integer(), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["risk_id"], ["risks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_risk_treatments_risk_id", "risk_treatments", ["risk_id"])

    if "risk_retirements" not in existing:
        op.create_table(
            "risk_retirements",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("risk_id", sa.Integer(), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column("retired_by_id", sa.Integer(), nullable=True),
            sa.Column("retired_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["risk_id"], ["risks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["retired_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("risk_id"),
        )

    # ── Exemptions ────────────────────────────────────────────────────────
    if "exemptions" not in existing:
        op.create_table(
            "exemptions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("exemption_code", sa.String(length=20), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("control_ref_id", sa.Integer(), nullable=False),
            sa.Column("requested_by_id", sa.Integer(), nullable=True),
            sa.Column("exemption_type", sa.String(length=20), nullable=False, server_default="FULL"),
            sa.Column("justification", sa.Text(), nullable=False),
            sa.Column("risk_acceptance", sa.Text(), nullable=True),
            sa.Column("compensating_controls", sa.Text(), nullable=True),
            sa.Column("valid_from", sa.Date(), nullable=True),
            sa.Column("valid_until", sa.Date(), nullable=False),
            sa.Column("review_date", sa.Date(), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="UNDER_REVIEW"),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["control_ref_id"], ["controls.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["requested_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "exemption_code", name="uq_exemption_org_code"),
            *_versioned_columns(),
        )
        op.create_index("ix_exemptions_organization_id", "exemptions", ["organization_id"])
        op.create_index("ix_exemptions_control_ref_id", "exemptions", ["control_ref_id"])

    # ── Organization documents ────────────────────────────────────────────
    if "risk_register_documents" not in existing:
        op.create_table(
            "risk_register_documents",
            *_document_columns(),
            sa.UniqueConstraint("organization_id", name="uq_risk_register_document_org"),
        )

    if "soa_documents" not in existing:
        op.create_table(
            "soa_documents",
            *_document_columns(),
            sa.UniqueConstraint("organization_id", name="uq_soa_document_org"),
        )

    # ── Version history ───────────────────────────────────────────────────
    if "version_snapshots" not in existing:
        op.create_table(
            "version_snapshots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=50), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("version_tenths", sa.Integer(), nullable=False),
            sa.Column("change_description", sa.Text(), nullable=False, server_default=""),
            sa.Column("actor", sa.String(length=255), nullable=False, server_default="system"),
            sa.Column("actor_designation", sa.String(length=150), nullable=True),
            sa.Column("action", sa.String(length=50), nullable=False),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("approved_by_id", sa.Integer(), nullable=True),
            sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approved_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "entity_type", "entity_id", "version_tenths", name="uq_version_snapshot_entity_version",
            ),
        )
        op.create_index("ix_version_snapshots_organization_id", "version_snapshots", ["organization_id"])
        op.create_index("ix_version_snapshot_entity", "version_snapshots", ["entity_type", "entity_id"])

    # ── Audit & notifications ─────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=50), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("actor", sa.String(length=255), nullable=False, server_default="system"),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("old_values_json", sa.Text(), nullable=True),
            sa.Column("new_values_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_org", "audit_logs", ["organization_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor_user_id"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=True),
            sa.Column("type", sa.String(length=30), nullable=False, server_default="SYSTEM"),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("link", sa.String(length=500), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
        op.create_index("ix_notifications_organization_id", "notifications", ["organization_id"])


def downgrade():
    for table in (
        "notifications",
        "audit_logs",
        "version_snapshots",
        "soa_documents",
        "risk_register_documents",
        "exemptions",
        "risk_retirements",
        "risk_treatments",
        "risks",
        "soa_entries",
        "controls",
        "organization_members",
        "users",
        "organizations",
    ):
        op.drop_table(table)
