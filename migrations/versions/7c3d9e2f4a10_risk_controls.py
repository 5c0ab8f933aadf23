"""risk_controls

Links risks to the Annex A controls that treat them (many-to-many, one row
per risk/control pair).

Revision ID: 7c3d9e2f4a10
Revises: 5e1f0c2a9b01
Create Date: 2026-10-19 10:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c3d9e2f4a10"
down_revision = "5e1f0c2a9b01"
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    if "risk_controls" in inspector.get_table_names():
        return

    op.create_table(
        "risk_controls",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("risk_id", sa.Integer(), nullable=False),
        sa.Column("control_ref_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["risk_id"], ["risks.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["control_ref_id"], ["controls.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("risk_id", "control_ref_id", name="uq_risk_control"),
    )
    op.create_index("ix_risk_controls_control", "risk_controls", ["control_ref_id"])


def downgrade():
    op.drop_index("ix_risk_controls_control", table_name="risk_controls")
    op.drop_table("risk_controls")
