"""Control exemption service layer.

Transaction policy: every public function is one unit of work and commits
(or rolls back) itself.  Approval transitions live on ``exemption_workflow``.

Exemptions run the shared two-stage approval, plus their own lifecycle:
  - 2nd level approval activates the exemption (status ACTIVE)
  - revoke: ACTIVE → REVOKED, minor version bump, "Revoked" snapshot
  - renew:  ACTIVE / EXPIRED → back to DRAFT + UNDER_REVIEW, minor bump,
            "Renewal Request" snapshot
"""
import logging
from datetime import datetime, timezone

from grc.core.actor import ActorContext
from grc.core.exceptions import AuthorizationError, InvalidStateTransitionError, ValidationError
from grc.models import db
from grc.models.audit import write_audit
from grc.models.auth import Organization
from grc.models.exemption import (
    EXEMPTION_STATUS_ACTIVE,
    EXEMPTION_STATUS_EXPIRED,
    EXEMPTION_STATUS_REVOKED,
    EXEMPTION_STATUS_UNDER_REVIEW,
    EXEMPTION_TYPES,
    Exemption,
)
from grc.models.soa import Control
from grc.models.versioning import (
    SNAPSHOT_DRAFT_AND_REVIEW,
    SNAPSHOT_RENEWAL,
    SNAPSHOT_REVOKED,
    ApprovalStatus,
)
from grc.services import version_store
from grc.services.approval_workflow import ApprovalWorkflow, unit_of_work
from grc.services.mutation_guard import apply_changes, ensure_can_edit, ensure_can_write, ensure_member
from grc.services.notification import NotificationOutbox
from grc.services.version_numbers import BUMP_MINOR, INITIAL_VERSION, next_version
from grc.utils.helpers import count_by, get_or_raise, next_sequential_code, parse_date_input, parse_text

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({
    "title", "exemption_type", "justification", "risk_acceptance", "compensating_controls",
    "valid_from", "valid_until", "review_date", "comments",
})
_DATE_FIELDS = ("valid_from", "valid_until", "review_date")
_TEXT_FIELDS = ("risk_acceptance", "compensating_controls", "comments")


class ExemptionWorkflow(ApprovalWorkflow):
    def describe(self, exemption):
        return f"Exemption {exemption.exemption_code}"

    def owner_recipients(self, exemption, actor):
        uid = exemption.requested_by_id or exemption.created_by_id
        return [uid] if uid and uid != actor.user_id else []

    def after_transition(self, exemption, action, actor, **kwargs):
        if action == "second_approval":
            exemption.status = EXEMPTION_STATUS_ACTIVE


exemption_workflow = ExemptionWorkflow(Exemption, label="Exemption", link_prefix="/exemptions")


def _reset_to_review(exemption):
    exemption.status = EXEMPTION_STATUS_UNDER_REVIEW


def _coerce_changes(data: dict) -> dict:
    unknown = sorted(set(data) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(
            f"Fields cannot be updated: {', '.join(unknown)}",
            details={f: "not editable" for f in unknown},
        )
    changes = dict(data)
    for name in ("title", "justification"):
        if name in changes:
            changes[name] = parse_text(changes[name], name)
    for name in _TEXT_FIELDS:
        if name in changes:
            changes[name] = parse_text(changes[name], name, required=False)
    if "exemption_type" in changes:
        changes["exemption_type"] = parse_text(changes["exemption_type"], "exemption_type")
    if "exemption_type" in changes and changes["exemption_type"] not in EXEMPTION_TYPES:
        raise ValidationError(
            f"Invalid exemption_type. Must be one of: {', '.join(sorted(EXEMPTION_TYPES))}",
            details={"exemption_type": "invalid"},
        )
    for name in _DATE_FIELDS:
        if name in changes:
            changes[name] = parse_date_input(changes[name], name)
    if "valid_until" in changes and changes["valid_until"] is None:
        raise ValidationError(
            "Valid Until date is required (exemptions must be time-bound)", details={"valid_until": "required"},
        )
    return changes


# ── CRUD ─────────────────────────────────────────────────────────────────


def create_exemption(actor: ActorContext, organization_id, data: dict) -> Exemption:
    """Create a DRAFT exemption (status UNDER_REVIEW) at v0.1."""
    for name, message in (
        ("title", "Title is required"),
        ("control_ref_id", "Control is required"),
        ("justification", "Justification is required"),
        ("valid_until", "Valid Until date is required (exemptions must be time-bound)"),
    ):
        if not data.get(name):
            raise ValidationError(message, details={name: "required"})
    fields = _coerce_changes({k: v for k, v in data.items() if k != "control_ref_id"})

    get_or_raise(Organization, organization_id, "Organization")
    control = db.session.get(Control, data["control_ref_id"])
    if not control or control.organization_id != organization_id:
        raise ValidationError("Control not found in this organization", details={"control_ref_id": "invalid"})
    ensure_can_write(actor, organization_id, "exemptions", action="create")

    with unit_of_work("Exemption"):
        exemption = Exemption(
            organization_id=organization_id,
            exemption_code=next_sequential_code(Exemption, Exemption.exemption_code, "EX", organization_id),
            control=control,
            requested_by_id=actor.user_id,
            created_by_id=actor.user_id,
            status=EXEMPTION_STATUS_UNDER_REVIEW,
            approval_status=ApprovalStatus.DRAFT,
            version_tenths=INITIAL_VERSION.tenths,
            **fields,
        )
        db.session.add(exemption)
        db.session.flush()
        version_store.upsert_snapshot(
            exemption, INITIAL_VERSION, action=SNAPSHOT_DRAFT_AND_REVIEW,
            change_description=f"Exemption requested for {control.control_id}: {exemption.title}",
            actor=actor, created_by_id=actor.user_id,
        )
        write_audit(
            entity_type=Exemption.ENTITY_TYPE, entity_id=exemption.id, action="CREATE",
            actor=actor.display_name, actor_user_id=actor.user_id, organization_id=organization_id,
            new_values={"exemption_code": exemption.exemption_code, "control": control.control_id,
                        "valid_until": exemption.valid_until},
        )

    logger.info(
        "Exemption %s created", exemption.exemption_code,
        extra={"organization_id": organization_id, "entity_type": "exemption", "entity_id": exemption.id,
               "actor_id": actor.user_id, "action": "create"},
    )
    return exemption


def get_exemption(actor: ActorContext, exemption_id) -> Exemption:
    exemption = exemption_workflow.get(exemption_id)
    ensure_member(actor, exemption.organization_id)
    return exemption


def update_exemption(actor: ActorContext, exemption_id, data: dict, *, expected_version=None) -> Exemption:
    """Edit fields; an APPROVED exemption drops back to DRAFT / UNDER_REVIEW."""
    changes = _coerce_changes(data)
    with unit_of_work("Exemption"):
        exemption = exemption_workflow.get(exemption_id)
        ensure_can_edit(actor, exemption, exemption_workflow.describe(exemption))
        exemption_workflow.check_expected_version(exemption, expected_version)
        if exemption.status == EXEMPTION_STATUS_REVOKED:
            raise InvalidStateTransitionError(
                exemption_workflow.describe(exemption), "edit", exemption.status, "exemption has been revoked",
            )
        result = apply_changes(
            exemption, changes, actor, allowed_fields=EDITABLE_FIELDS,
            entity_label=exemption_workflow.describe(exemption), on_demote=_reset_to_review,
        )
        if result.changed:
            write_audit(
                entity_type=Exemption.ENTITY_TYPE, entity_id=exemption.id, action="UPDATE",
                actor=actor.display_name, actor_user_id=actor.user_id,
                organization_id=exemption.organization_id,
                old_values=result.old_values(), new_values=result.new_values(),
            )
    return exemption


# ── Lifecycle ────────────────────────────────────────────────────────────


def revoke(actor: ActorContext, exemption_id, reason, *, expected_version=None) -> Exemption:
    """ACTIVE → REVOKED.  Reviewer gate; bumps the minor version."""
    if reason is None or (isinstance(reason, str) and not reason.strip()):
        raise ValidationError("Revocation reason is required", details={"reason": "required"})
    reason = parse_text(reason, "reason")

    outbox = NotificationOutbox()
    with unit_of_work("Exemption"):
        exemption = exemption_workflow.get(exemption_id)
        ensure_member(actor, exemption.organization_id, action="revoke")
        exemption_workflow.check_expected_version(exemption, expected_version)
        label = exemption_workflow.describe(exemption)
        if exemption.status != EXEMPTION_STATUS_ACTIVE:
            raise InvalidStateTransitionError(label, "revoke", exemption.status, "only active exemptions can be revoked")
        if not exemption_workflow.is_reviewer(actor, exemption):
            raise AuthorizationError("Only reviewers or admins can revoke exemptions",
                                     actor_id=actor.user_id, action="revoke")

        old = {"status": exemption.status, "version": str(exemption.version)}
        new_version = next_version(exemption.version, BUMP_MINOR)
        exemption.version = new_version
        exemption.status = EXEMPTION_STATUS_REVOKED
        exemption.revoked_at = datetime.now(timezone.utc)
        exemption.comments = f"Revoked: {reason}"
        version_store.upsert_snapshot(
            exemption, new_version, action=SNAPSHOT_REVOKED, change_description=f"Revoked: {reason}",
            actor=actor, created_by_id=exemption.created_by_id, approved_by_id=actor.user_id,
        )
        write_audit(
            entity_type=Exemption.ENTITY_TYPE, entity_id=exemption.id, action="UPDATE",
            actor=actor.display_name, actor_user_id=actor.user_id, organization_id=exemption.organization_id,
            old_values=old, new_values={"status": EXEMPTION_STATUS_REVOKED, "version": str(new_version),
                                        "reason": reason},
        )
        outbox.add(
            exemption_workflow.owner_recipients(exemption, actor),
            organization_id=exemption.organization_id, type="EXEMPTION_REVOKED",
            title=f"{label} revoked", message=f"Revoked by {actor.display_name}: {reason}",
            link=exemption_workflow.link(exemption),
        )

    logger.info(
        "%s revoked", label,
        extra={"organization_id": exemption.organization_id, "entity_type": "exemption",
               "entity_id": exemption.id, "actor_id": actor.user_id, "action": "revoke"},
    )
    outbox.deliver()
    return exemption


def renew(actor: ActorContext, exemption_id, data: dict, *, expected_version=None) -> Exemption:
    """ACTIVE / EXPIRED → DRAFT + UNDER_REVIEW with a new validity window."""
    valid_until = parse_date_input(data.get("valid_until"), "valid_until")
    if valid_until is None:
        raise ValidationError("Valid Until date is required for renewal", details={"valid_until": "required"})
    review_date = parse_date_input(data.get("review_date"), "review_date")
    justification = parse_text(data.get("justification"), "justification", required=False)
    comments = parse_text(data.get("comments"), "comments", required=False)

    with unit_of_work("Exemption"):
        exemption = exemption_workflow.get(exemption_id)
        ensure_can_write(actor, exemption.organization_id, "exemptions", action="renew")
        exemption_workflow.check_expected_version(exemption, expected_version)
        label = exemption_workflow.describe(exemption)
        if exemption.status not in (EXEMPTION_STATUS_ACTIVE, EXEMPTION_STATUS_EXPIRED):
            raise InvalidStateTransitionError(
                label, "renew", exemption.status, "only active or expired exemptions can be renewed",
            )

        old = {
            "status": exemption.status, "approval_status": exemption.approval_status,
            "valid_until": exemption.valid_until, "version": str(exemption.version),
        }
        new_version = next_version(exemption.version, BUMP_MINOR)
        exemption.version = new_version
        exemption.valid_until = valid_until
        if review_date:
            exemption.review_date = review_date
        if justification:
            exemption.justification = justification
        if comments:
            exemption.comments = comments
        exemption.status = EXEMPTION_STATUS_UNDER_REVIEW
        exemption.approval_status = ApprovalStatus.DRAFT

        description = f"Renewal request: validity extended to {valid_until.isoformat()}"
        version_store.upsert_snapshot(
            exemption, new_version, action=SNAPSHOT_RENEWAL, change_description=description,
            actor=actor, created_by_id=actor.user_id,
        )
        write_audit(
            entity_type=Exemption.ENTITY_TYPE, entity_id=exemption.id, action="UPDATE",
            actor=actor.display_name, actor_user_id=actor.user_id, organization_id=exemption.organization_id,
            old_values=old,
            new_values={"status": EXEMPTION_STATUS_UNDER_REVIEW, "approval_status": ApprovalStatus.DRAFT,
                        "valid_until": valid_until, "version": str(new_version)},
        )

    logger.info(
        "%s renewal requested", label,
        extra={"organization_id": exemption.organization_id, "entity_type": "exemption",
               "entity_id": exemption.id, "actor_id": actor.user_id, "action": "renew"},
    )
    return exemption


# ── Queries ──────────────────────────────────────────────────────────────


def list_exemptions(actor: ActorContext, organization_id, *, status=None, approval_status=None, control_ref_id=None):
    ensure_member(actor, organization_id)
    q = Exemption.query.filter_by(organization_id=organization_id)
    if status:
        q = q.filter(Exemption.status == status)
    if approval_status:
        q = q.filter(Exemption.approval_status == approval_status)
    if control_ref_id:
        q = q.filter(Exemption.control_ref_id == control_ref_id)
    return q.order_by(Exemption.exemption_code).all()


def stats(actor: ActorContext, organization_id, today=None) -> dict:
    """Counts by lifecycle status; ACTIVE exemptions past valid_until count as expired."""
    ensure_member(actor, organization_id)
    today = today or datetime.now(timezone.utc).date()
    rows = Exemption.query.filter_by(organization_id=organization_id).all()
    expired = [e for e in rows if e.is_effectively_expired(today)]
    active = [e for e in rows if e.status == EXEMPTION_STATUS_ACTIVE and e not in expired]
    return {
        "total": len(rows),
        "active": len(active),
        "expired": len(expired),
        "under_review": sum(1 for e in rows if e.status == EXEMPTION_STATUS_UNDER_REVIEW),
        "revoked": sum(1 for e in rows if e.status == EXEMPTION_STATUS_REVOKED),
        "expiring_soon": sum(1 for e in active if (e.valid_until - today).days <= 30),
        "by_type": count_by(Exemption, Exemption.exemption_type, organization_id=organization_id),
        "pending_approval": sum(1 for e in rows if e.approval_status in ApprovalStatus.PENDING),
    }
