"""
Two-stage approval workflow shared by every versioned GRC entity.

Manages approval status transitions with:
  - Transition validation (APPROVAL_TRANSITIONS)
  - Role / assignment gates per stage (overridable hooks)
  - Version allocation + snapshot recording via the version store
  - Audit trail via write_audit
  - Notifications queued in an outbox and delivered after commit

One ApprovalWorkflow instance is created per entity kind (Risk, SoA entry,
Exemption, Risk Register document, SoA document).  Subclasses only override
the hooks that differ: who counts as reviewer/approver, who gets notified,
and domain side effects such as activating an exemption.

Usage:
    from grc.services.risk_service import risk_workflow

    risk = risk_workflow.submit_for_review(
        risk_id, actor, change_description="Annual review", version_bump="minor",
    )

Every operation runs in one transaction: status/version update, snapshot
upsert and audit row are committed together or not at all.  Pass
``expected_version`` to fail with ConflictError when the caller's view is
stale; concurrent writers that slip past that check are stopped by the
row_version column (StaleDataError → ConflictError).
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from grc.core.actor import ActorContext
from grc.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from grc.models import db
from grc.models.audit import write_audit
from grc.models.auth import ROLE_ADMIN, ROLE_LOCAL_ADMIN
from grc.models.versioning import (
    SNAPSHOT_DRAFT_AND_REVIEW,
    SNAPSHOT_REJECTED,
    SNAPSHOT_RISK_RETIRED,
    SNAPSHOT_SUBMITTED,
    ApprovalStatus,
)
from grc.services import version_store
from grc.services.notification import NotificationOutbox, NotificationService
from grc.services.version_numbers import BUMP_MINOR, BUMP_NONE, Version, next_version, normalize_bump

logger = logging.getLogger(__name__)

S = ApprovalStatus

# Action → allowed source states and target state.
APPROVAL_TRANSITIONS = {
    "submit_for_review": {"from": [S.DRAFT, S.REJECTED], "to": S.PENDING_FIRST_APPROVAL},
    "first_approval": {"from": [S.PENDING_FIRST_APPROVAL], "to": S.PENDING_SECOND_APPROVAL},
    "second_approval": {"from": [S.PENDING_SECOND_APPROVAL], "to": S.APPROVED},
    "reject": {"from": [S.PENDING_FIRST_APPROVAL, S.PENDING_SECOND_APPROVAL], "to": S.REJECTED},
    "new_revision": {"from": [S.APPROVED], "to": S.DRAFT, "document_only": True},
    "discard_revision": {"from": [S.DRAFT], "to": S.APPROVED, "document_only": True},
    "retire": {
        "from": [S.DRAFT, S.PENDING_FIRST_APPROVAL, S.PENDING_SECOND_APPROVAL, S.APPROVED, S.REJECTED],
        "to": S.CLOSED,
        "retire_only": True,
    },
}


def validate_transition(status: str, action: str, *, document_level=False, supports_retire=False) -> dict:
    """
    Validate whether an action is valid for the current state.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    rule = APPROVAL_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": status, "to": None, "reason": f"Unknown action: {action}"}

    if rule.get("document_only") and not document_level:
        return {"valid": False, "from": status, "to": rule["to"],
                "reason": f"'{action}' is only available for documents"}

    if rule.get("retire_only") and not supports_retire:
        return {"valid": False, "from": status, "to": rule["to"],
                "reason": f"'{action}' is not supported for this entity"}

    if status not in rule["from"]:
        return {"valid": False, "from": status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{status}'"}

    return {"valid": True, "from": status, "to": rule["to"], "reason": None}


@contextmanager
def unit_of_work(resource: str):
    """Commit on success, roll back on any error.

    Lost-update races surface as ConflictError rather than raw SQLAlchemy errors.
    """
    try:
        yield
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        raise ConflictError(
            resource, "row_version",
            message=f"{resource} was modified by another request; reload and retry",
        ) from exc
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(
            resource, "version",
            message=f"{resource} version history changed concurrently; reload and retry",
        ) from exc
    except Exception:
        db.session.rollback()
        raise


def _required(value, field_name: str, message: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(message, details={field_name: "required"})
    return text


class ApprovalWorkflow:
    """Generic two-stage approval workflow for one versioned model."""

    #: first-level gate for entity-level workflows
    REVIEWER_ROLES = (ROLE_LOCAL_ADMIN, ROLE_ADMIN)
    #: second-level gate for entity-level workflows
    APPROVER_ROLES = (ROLE_ADMIN,)

    def __init__(self, model, *, label, document_level=False, supports_retire=False, link_prefix=None):
        self.model = model
        self.entity_type = model.ENTITY_TYPE
        self.label = label
        self.document_level = document_level
        self.supports_retire = supports_retire
        self.link_prefix = link_prefix

    # ── Hooks ─────────────────────────────────────────────────────────────

    def describe(self, entity) -> str:
        return f"{self.label} {entity.id}"

    def link(self, entity) -> str | None:
        if not self.link_prefix:
            return None
        return f"{self.link_prefix}/{entity.id}"

    def is_reviewer(self, actor: ActorContext, entity) -> bool:
        return actor.has_role_in(entity.organization_id, *self.REVIEWER_ROLES)

    def is_approver(self, actor: ActorContext, entity) -> bool:
        return actor.has_role_in(entity.organization_id, *self.APPROVER_ROLES)

    def reviewer_recipients(self, entity, actor: ActorContext) -> list:
        return NotificationService.reviewers_for(entity.organization_id, exclude_user_id=actor.user_id)

    def approver_recipients(self, entity, actor: ActorContext) -> list:
        return NotificationService.approvers_for(entity.organization_id, exclude_user_id=actor.user_id)

    def owner_recipients(self, entity, actor: ActorContext) -> list:
        return [uid for uid in (entity.created_by_id,) if uid and uid != actor.user_id]

    def after_transition(self, entity, action: str, actor: ActorContext, **kwargs) -> None:
        """Domain side effects, applied before the snapshot and audit row are written."""

    def restore_from_payload(self, entity, payload: dict) -> None:
        """Copy fields back from a snapshot payload when a revision is discarded."""

    def apply_retirement(self, entity, actor: ActorContext, reason: str):
        raise NotImplementedError(f"{self.label} cannot be retired")

    # ── Loading / guards ──────────────────────────────────────────────────

    def get(self, entity_id):
        entity = db.session.get(self.model, entity_id)
        if not entity:
            raise NotFoundError(resource=self.label, resource_id=entity_id)
        return entity

    def _require_member(self, actor: ActorContext, entity, action: str, *, allow_viewer=True):
        org_id = entity.organization_id
        if actor.is_global_admin:
            return
        if not actor.is_member(org_id):
            raise AuthorizationError(
                "You are not a member of this organization", actor_id=actor.user_id, action=action,
            )
        if not allow_viewer and actor.is_viewer_in(org_id):
            raise AuthorizationError(
                f"Viewers cannot perform '{action}'", actor_id=actor.user_id, action=action,
            )

    def check_expected_version(self, entity, expected_version):
        if expected_version is None:
            return
        try:
            expected = Version.parse(expected_version)
        except ValueError as exc:
            raise ValidationError(str(exc), details={"expected_version": "invalid"}) from exc
        if expected != entity.version:
            raise ConflictError(
                self.label, "version", str(entity.version),
                message=(
                    f"{self.describe(entity)} is at version {entity.version}, "
                    f"not {expected}; reload and retry"
                ),
            )

    def _check_state(self, entity, action: str, reason: str | None = None):
        result = validate_transition(
            entity.approval_status, action,
            document_level=self.document_level, supports_retire=self.supports_retire,
        )
        if not result["valid"]:
            raise InvalidStateTransitionError(
                self.describe(entity), action, entity.approval_status, reason or result["reason"],
            )
        return result["to"]

    def _deny(self, actor: ActorContext, action: str, message: str):
        raise AuthorizationError(message, actor_id=actor.user_id, action=action)

    def _latest_version(self, entity) -> Version:
        recorded = version_store.latest_version(entity)
        if recorded is None:
            return entity.version
        return max(recorded, entity.version)

    def _log(self, entity, action: str, actor: ActorContext, old_status: str):
        logger.info(
            "%s %s: %s → %s (v%s)",
            self.describe(entity), action, old_status, entity.approval_status, entity.version,
            extra={
                "organization_id": entity.organization_id,
                "entity_type": self.entity_type,
                "entity_id": entity.id,
                "actor_id": actor.user_id,
                "action": action,
            },
        )

    def _audit(self, entity, actor: ActorContext, audit_action: str, old_values: dict, new_values: dict):
        write_audit(
            entity_type=self.entity_type,
            entity_id=entity.id,
            action=audit_action,
            actor=actor.display_name,
            actor_user_id=actor.user_id,
            organization_id=entity.organization_id,
            old_values=old_values,
            new_values=new_values,
        )

    # ── Transitions ───────────────────────────────────────────────────────

    def submit_for_review(self, entity_id, actor: ActorContext, change_description, version_bump=BUMP_NONE,
                          *, expected_version=None):
        """DRAFT / REJECTED → PENDING_FIRST_APPROVAL, allocating the next version."""
        action = "submit_for_review"
        description = _required(change_description, "change_description", "Description of change is required")
        bump = normalize_bump(version_bump)
        outbox = NotificationOutbox()

        with unit_of_work(self.label):
            entity = self.get(entity_id)
            self._require_member(actor, entity, action, allow_viewer=False)
            self.check_expected_version(entity, expected_version)
            target = self._check_state(entity, action)

            old = {"approval_status": entity.approval_status, "version": str(entity.version)}
            new_version = next_version(self._latest_version(entity), bump)
            entity.version = new_version
            entity.approval_status = target
            self.after_transition(entity, action, actor, change_description=description)

            version_store.upsert_snapshot(
                entity, new_version, action=SNAPSHOT_SUBMITTED, change_description=description,
                actor=actor, created_by_id=actor.user_id,
            )
            self._audit(entity, actor, "UPDATE", old, {
                "approval_status": target, "version": str(new_version), "change_description": description,
            })
            outbox.add(
                self.reviewer_recipients(entity, actor),
                organization_id=entity.organization_id, type="APPROVAL_REQUIRED",
                title=f"{self.describe(entity)} awaits 1st level approval",
                message=f"{actor.display_name} submitted v{new_version}: {description}",
                link=self.link(entity),
            )

        self._log(entity, action, actor, old["approval_status"])
        outbox.deliver()
        return entity

    def first_approval(self, entity_id, actor: ActorContext, comments=None, *, expected_version=None):
        """PENDING_FIRST_APPROVAL → PENDING_SECOND_APPROVAL.  Version unchanged."""
        action = "first_approval"
        outbox = NotificationOutbox()

        with unit_of_work(self.label):
            entity = self.get(entity_id)
            self._require_member(actor, entity, action)
            self.check_expected_version(entity, expected_version)
            target = self._check_state(entity, action, f"{self.label} is not pending 1st level approval")
            if not self.is_reviewer(actor, entity):
                self._deny(actor, action, "Only the designated reviewer or an admin can provide 1st level approval")

            old_status = entity.approval_status
            entity.approval_status = target
            self.after_transition(entity, action, actor, comments=comments)
            self._audit(entity, actor, "APPROVE", {"approval_status": old_status}, {
                "approval_status": target, "version": str(entity.version), "comments": comments,
            })
            outbox.add(
                self.approver_recipients(entity, actor),
                organization_id=entity.organization_id, type="APPROVAL_REQUIRED",
                title=f"{self.describe(entity)} awaits 2nd level approval",
                message=f"1st level approval by {actor.display_name}" + (f": {comments}" if comments else ""),
                link=self.link(entity),
            )

        self._log(entity, action, actor, old_status)
        outbox.deliver()
        return entity

    def second_approval(self, entity_id, actor: ActorContext, comments=None, *, expected_version=None):
        """PENDING_SECOND_APPROVAL → APPROVED.  Version unchanged."""
        action = "second_approval"
        outbox = NotificationOutbox()

        with unit_of_work(self.label):
            entity = self.get(entity_id)
            self._require_member(actor, entity, action)
            self.check_expected_version(entity, expected_version)
            target = self._check_state(entity, action, f"{self.label} is not pending 2nd level approval")
            if not self.is_approver(actor, entity):
                self._deny(actor, action, "Only the designated approver or an admin can provide 2nd level approval")

            old_status = entity.approval_status
            entity.approval_status = target
            self.after_transition(entity, action, actor, comments=comments)
            self._audit(entity, actor, "APPROVE", {"approval_status": old_status}, {
                "approval_status": target, "version": str(entity.version),
                "approved_by": actor.user_id, "comments": comments,
            })
            outbox.add(
                self.owner_recipients(entity, actor),
                organization_id=entity.organization_id, type="APPROVED",
                title=f"{self.describe(entity)} approved",
                message=f"Version {entity.version} approved by {actor.display_name}",
                link=self.link(entity),
            )

        self._log(entity, action, actor, old_status)
        outbox.deliver()
        return entity

    def reject(self, entity_id, actor: ActorContext, reason, *, expected_version=None):
        """PENDING_* → REJECTED.  Gate depends on the stage being rejected."""
        action = "reject"
        reason = _required(reason, "reason", "Rejection reason is required")
        outbox = NotificationOutbox()

        with unit_of_work(self.label):
            entity = self.get(entity_id)
            self._require_member(actor, entity, action)
            self.check_expected_version(entity, expected_version)
            target = self._check_state(entity, action, f"{self.label} is not pending approval")
            old_status = entity.approval_status
            if old_status == S.PENDING_FIRST_APPROVAL and not self.is_reviewer(actor, entity):
                self._deny(actor, action, "Only the designated reviewer or an admin can reject at 1st level")
            if old_status == S.PENDING_SECOND_APPROVAL and not self.is_approver(actor, entity):
                self._deny(actor, action, "Only the designated approver or an admin can reject at 2nd level")

            entity.approval_status = target
            self.after_transition(entity, action, actor, reason=reason)
            version_store.upsert_snapshot(
                entity, entity.version, action=SNAPSHOT_REJECTED, change_description=f"Rejected: {reason}",
                actor=actor, created_by_id=entity.created_by_id,
            )
            self._audit(entity, actor, "REJECT", {"approval_status": old_status}, {
                "approval_status": target, "reason": reason,
            })
            outbox.add(
                self.owner_recipients(entity, actor),
                organization_id=entity.organization_id, type="REJECTED",
                title=f"{self.describe(entity)} rejected",
                message=f"Rejected by {actor.display_name}: {reason}",
                link=self.link(entity),
            )

        self._log(entity, action, actor, old_status)
        outbox.deliver()
        return entity

    def retire(self, entity_id, actor: ActorContext, reason, *, expected_version=None):
        """Any non-CLOSED state → CLOSED.  Returns the record built by ``apply_retirement``."""
        action = "retire"
        reason = _required(reason, "reason", "Retirement reason is required")
        outbox = NotificationOutbox()

        with unit_of_work(self.label):
            entity = self.get(entity_id)
            self._require_member(actor, entity, action, allow_viewer=False)
            self.check_expected_version(entity, expected_version)
            target = self._check_state(entity, action)

            old_status = entity.approval_status
            entity.approval_status = target
            record = self.apply_retirement(entity, actor, reason)
            version_store.upsert_snapshot(
                entity, entity.version, action=SNAPSHOT_RISK_RETIRED,
                change_description=f"{self.label} retired: {reason}",
                actor=actor, created_by_id=actor.user_id,
            )
            self._audit(entity, actor, "UPDATE", {"approval_status": old_status}, {
                "approval_status": target, "retired": True, "reason": reason,
            })
            outbox.add(
                self.owner_recipients(entity, actor),
                organization_id=entity.organization_id, type="RISK_RETIRED",
                title=f"{self.describe(entity)} retired",
                message=f"Retired by {actor.display_name}: {reason}",
                link=self.link(entity),
            )

        self._log(entity, action, actor, old_status)
        outbox.deliver()
        return record

    def new_revision(self, entity_id, actor: ActorContext, change_description, version_bump=BUMP_MINOR,
                     *, expected_version=None):
        """APPROVED → DRAFT at a bumped version (documents only)."""
        action = "new_revision"
        description = _required(change_description, "change_description", "Description of change is required")
        bump = normalize_bump(version_bump)
        if bump == BUMP_NONE:
            raise ValidationError(
                "A new revision needs a minor or major version bump", details={"version_bump": "invalid"},
            )

        with unit_of_work(self.label):
            entity = self.get(entity_id)
            self._require_member(actor, entity, action, allow_viewer=False)
            self.check_expected_version(entity, expected_version)
            target = self._check_state(entity, action)

            old = {"approval_status": entity.approval_status, "version": str(entity.version)}
            new_version = next_version(self._latest_version(entity), bump)
            entity.version = new_version
            entity.approval_status = target
            self.after_transition(entity, action, actor, change_description=description)
            version_store.upsert_snapshot(
                entity, new_version, action=SNAPSHOT_DRAFT_AND_REVIEW, change_description=description,
                actor=actor, created_by_id=actor.user_id,
            )
            self._audit(entity, actor, "UPDATE", old, {
                "approval_status": target, "version": str(new_version), "change_description": description,
            })

        self._log(entity, action, actor, old["approval_status"])
        return entity

    def discard_revision(self, entity_id, actor: ActorContext, *, expected_version=None):
        """DRAFT → APPROVED, dropping an unsubmitted revision (documents only)."""
        action = "discard_revision"

        with unit_of_work(self.label):
            entity = self.get(entity_id)
            self._require_member(actor, entity, action, allow_viewer=False)
            self.check_expected_version(entity, expected_version)
            target = self._check_state(entity, action)

            recent = version_store.latest_snapshots(entity, limit=2)
            if len(recent) < 2:
                raise ValidationError("Cannot discard: this is the initial version")
            latest, previous = recent
            if latest.action != SNAPSHOT_DRAFT_AND_REVIEW:
                raise ValidationError(
                    f"Cannot discard: version {latest.version} has already been '{latest.action}'",
                )

            old = {"approval_status": entity.approval_status, "version": str(entity.version)}
            discarded = latest.version
            self.restore_from_payload(entity, previous.payload)
            version_store.delete_snapshot(latest)
            entity.version = previous.version
            entity.approval_status = target
            self.after_transition(entity, action, actor)
            self._audit(entity, actor, "UPDATE", old, {
                "approval_status": target, "version": str(previous.version),
                "discarded_version": str(discarded),
            })

        self._log(entity, action, actor, old["approval_status"])
        return entity

    # ── Version history ───────────────────────────────────────────────────

    def list_versions(self, entity_id, actor: ActorContext | None = None):
        entity = self.get(entity_id)
        if actor is not None:
            self._require_member(actor, entity, "list_versions")
        return version_store.list_snapshots(entity)

    def update_version_description(self, entity_id, snapshot_id, actor: ActorContext, text):
        text = _required(text, "description", "Description is required")
        entity = self.get(entity_id)
        return version_store.update_description(snapshot_id, actor, text, entity=entity)
