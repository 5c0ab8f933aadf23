"""
Version store: read/write access to VersionSnapshot rows.

Snapshots are keyed by (entity_type, entity_id, version).  Writing the same key
twice updates the existing row in place, so replaying an operation never
produces duplicate history entries.

All writers here only ``flush``; the calling workflow owns the transaction.
``update_description`` is the exception, being a standalone user operation.

Usage:
    from grc.services import version_store

    version_store.upsert_snapshot(risk, risk.version, actor=actor,
                                  action=SNAPSHOT_SUBMITTED,
                                  change_description="Quarterly review")
    history = version_store.list_snapshots(risk)
"""

import json
import logging

from grc.core.actor import ActorContext
from grc.core.exceptions import AuthorizationError, NotFoundError
from grc.models import db
from grc.models.audit import write_audit
from grc.models.versioning import VALID_SNAPSHOT_ACTIONS, VersionSnapshot
from grc.services.version_numbers import Version
from grc.utils.helpers import parse_text

logger = logging.getLogger(__name__)


def entity_key(entity) -> tuple[str, str]:
    return entity.ENTITY_TYPE, str(entity.id)


def _query_for(entity):
    entity_type, entity_id = entity_key(entity)
    return VersionSnapshot.query.filter_by(entity_type=entity_type, entity_id=entity_id)


# ── Writes ───────────────────────────────────────────────────────────────────


def upsert_snapshot(
    entity,
    version: Version,
    *,
    action: str,
    change_description: str,
    actor: ActorContext | None = None,
    created_by_id: int | None = None,
    approved_by_id: int | None = None,
    payload: dict | None = None,
) -> VersionSnapshot:
    """Insert or update the snapshot for ``(entity, version)``.

    ``payload`` defaults to ``entity.snapshot_payload()`` taken now, so callers
    should apply their field changes before recording the snapshot.
    """
    if action not in VALID_SNAPSHOT_ACTIONS:
        raise ValueError(f"Unknown snapshot action: {action!r}")
    version = Version.parse(version)
    if payload is None:
        payload = entity.snapshot_payload()

    snapshot = _query_for(entity).filter_by(version_tenths=version.tenths).first()
    if snapshot is None:
        entity_type, entity_id = entity_key(entity)
        snapshot = VersionSnapshot(
            organization_id=entity.organization_id,
            entity_type=entity_type,
            entity_id=entity_id,
            version_tenths=version.tenths,
        )
        db.session.add(snapshot)

    snapshot.action = action
    snapshot.change_description = change_description or ""
    snapshot.actor = actor.display_name if actor else "system"
    snapshot.actor_designation = actor.designation_in(entity.organization_id) if actor else None
    snapshot.created_by_id = created_by_id
    snapshot.approved_by_id = approved_by_id
    snapshot.payload_json = json.dumps(payload, default=str)

    db.session.flush()
    return snapshot


def delete_snapshot(snapshot: VersionSnapshot) -> None:
    db.session.delete(snapshot)
    db.session.flush()


# ── Reads ────────────────────────────────────────────────────────────────────


def list_snapshots(entity) -> list[VersionSnapshot]:
    """All snapshots for ``entity``, newest version first.

    Each call re-queries the store, so the result always reflects committed state.
    """
    return (
        _query_for(entity)
        .order_by(VersionSnapshot.version_tenths.desc(), VersionSnapshot.id.desc())
        .all()
    )


def latest_snapshots(entity, limit: int = 2) -> list[VersionSnapshot]:
    return (
        _query_for(entity)
        .order_by(VersionSnapshot.version_tenths.desc(), VersionSnapshot.id.desc())
        .limit(limit)
        .all()
    )


def latest_version(entity) -> Version | None:
    head = latest_snapshots(entity, limit=1)
    return head[0].version if head else None


def get_snapshot(snapshot_id: int) -> VersionSnapshot:
    snapshot = db.session.get(VersionSnapshot, snapshot_id)
    if not snapshot:
        raise NotFoundError(resource="Version entry", resource_id=snapshot_id)
    return snapshot


# ── Post-hoc description correction ──────────────────────────────────────────


def update_description(snapshot_id: int, actor: ActorContext, text: str, *, entity=None) -> VersionSnapshot:
    """Correct the human-readable description of a recorded snapshot.

    Only ``change_description`` may change; the action, actor and payload stay
    as recorded.  When ``entity`` is given the snapshot must belong to it.
    """
    text = parse_text(text, "description")

    snapshot = get_snapshot(snapshot_id)
    if entity is not None and (snapshot.entity_type, snapshot.entity_id) != entity_key(entity):
        raise NotFoundError(resource="Version entry", resource_id=snapshot_id)

    if not (actor.is_global_admin or actor.is_member(snapshot.organization_id)):
        raise AuthorizationError(
            "You are not a member of this organization", actor_id=actor.user_id, action="update_version_description",
        )

    old_text = snapshot.change_description
    try:
        snapshot.change_description = text
        write_audit(
            entity_type="version_snapshot",
            entity_id=snapshot.id,
            action="UPDATE",
            actor=actor.display_name,
            actor_user_id=actor.user_id,
            organization_id=snapshot.organization_id,
            old_values={"change_description": old_text},
            new_values={"change_description": text},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Version description updated",
        extra={
            "organization_id": snapshot.organization_id,
            "entity_type": snapshot.entity_type,
            "entity_id": snapshot.entity_id,
            "actor_id": actor.user_id,
            "action": "update_version_description",
        },
    )
    return snapshot
