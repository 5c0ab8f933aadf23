"""
GRC Platform
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for state changes.
"""

import json
from datetime import datetime, timezone

from grc.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {"CREATE", "UPDATE", "DELETE", "APPROVE", "REJECT"}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``old_values_json`` / ``new_values_json`` carry the
    fields that changed, serialised as JSON.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_org", "organization_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(50), nullable=False,
        comment="risk | soa_entry | exemption | risk_register_document | soa_document | version_snapshot",
    )
    entity_id = db.Column(db.String(64), nullable=False)

    # What happened
    action = db.Column(db.String(20), nullable=False, comment="CREATE | UPDATE | DELETE | APPROVE | REJECT")
    actor = db.Column(db.String(255), nullable=False, default="system")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Change payload
    old_values_json = db.Column(db.Text, default="{}")
    new_values_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _load(raw) -> dict:
        try:
            return json.loads(raw or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @property
    def old_values(self) -> dict:
        return self._load(self.old_values_json)

    @property
    def new_values(self) -> dict:
        return self._load(self.new_values_json)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    organization_id: int | None = None,
    actor_user_id: int | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    log = AuditLog(
        organization_id=organization_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        actor_user_id=actor_user_id,
        old_values_json=json.dumps(old_values or {}, default=str),
        new_values_json=json.dumps(new_values or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
