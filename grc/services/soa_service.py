"""Statement of Applicability service layer.

Transaction policy: every public function is one unit of work and commits
(or rolls back) itself.  Per-entry transitions live on ``soa_workflow``.

Operations:
- initialize_soa: one DRAFT entry per control (idempotent, admins only)
- update_entry / bulk_update: applicability edits through the mutation guard
- bulk_submit: every DRAFT / REJECTED entry → PENDING_FIRST_APPROVAL
- list_entries with statistics, pending_approvals
- export_entries / generate_soa_csv: full SoA as JSON or CSV
"""
import csv
import io
import logging
from datetime import datetime, timezone

from sqlalchemy import or_

from grc.core.actor import ActorContext
from grc.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from grc.models import db
from grc.models.audit import write_audit
from grc.models.auth import ROLE_ADMIN, ROLE_AUDITOR, ROLE_LOCAL_ADMIN, Organization
from grc.models.soa import CONTROL_SOURCES, SOA_STATUSES, Control, SoAEntry
from grc.models.versioning import (
    SNAPSHOT_DRAFT_AND_REVIEW,
    SNAPSHOT_SUBMITTED,
    ApprovalStatus,
)
from grc.services import version_store
from grc.services.approval_workflow import ApprovalWorkflow, unit_of_work
from grc.services.mutation_guard import apply_changes, ensure_can_write, ensure_member
from grc.services.notification import NotificationOutbox, NotificationService
from grc.services.version_numbers import INITIAL_VERSION
from grc.utils.helpers import get_or_raise, parse_bool, parse_text

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({
    "is_applicable", "justification", "exclusion_reason", "status",
    "control_owner", "documentation_references", "control_source", "comments",
})
EDITOR_ROLES = (ROLE_ADMIN, ROLE_LOCAL_ADMIN, ROLE_AUDITOR)
_TEXT_FIELDS = ("justification", "exclusion_reason", "control_owner", "documentation_references", "comments")


class SoAEntryWorkflow(ApprovalWorkflow):
    def describe(self, entry):
        ref = entry.control.control_id if entry.control else entry.id
        return f"SoA entry {ref}"


soa_workflow = SoAEntryWorkflow(SoAEntry, label="SoA entry", link_prefix="/soa")


def _coerce_changes(data: dict) -> dict:
    unknown = sorted(set(data) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(
            f"Fields cannot be updated: {', '.join(unknown)}",
            details={f: "not editable" for f in unknown},
        )
    changes = dict(data)
    if "is_applicable" in changes:
        changes["is_applicable"] = parse_bool(changes["is_applicable"])
    for name in _TEXT_FIELDS:
        if name in changes:
            changes[name] = parse_text(changes[name], name, required=False)
    for name in ("status", "control_source"):
        if name in changes:
            changes[name] = parse_text(changes[name], name)
    if "status" in changes and changes["status"] not in SOA_STATUSES:
        raise ValidationError(
            f"Invalid status. Must be one of: {', '.join(sorted(SOA_STATUSES))}",
            details={"status": "invalid"},
        )
    if "control_source" in changes and changes["control_source"] not in CONTROL_SOURCES:
        raise ValidationError(
            f"Invalid control_source. Must be one of: {', '.join(sorted(CONTROL_SOURCES))}",
            details={"control_source": "invalid"},
        )
    return changes


def _ensure_editor(actor: ActorContext, organization_id):
    ensure_member(actor, organization_id, action="edit")
    if not actor.has_role_in(organization_id, *EDITOR_ROLES):
        raise AuthorizationError("Only admins and auditors can update SoA", actor_id=actor.user_id, action="edit")


# ── Initialise ───────────────────────────────────────────────────────────


def initialize_soa(actor: ActorContext, organization_id) -> list[SoAEntry]:
    """Create a DRAFT v0.1 entry for every control that has none yet.

    Returns the newly created entries (empty when already initialised).
    """
    get_or_raise(Organization, organization_id, "Organization")
    ensure_member(actor, organization_id, action="initialize")
    if not actor.has_role_in(organization_id, ROLE_ADMIN, ROLE_LOCAL_ADMIN):
        raise AuthorizationError("Only admins can initialize SoA", actor_id=actor.user_id, action="initialize")

    created = []
    with unit_of_work("SoA entry"):
        controls = (
            Control.query.outerjoin(SoAEntry, SoAEntry.control_ref_id == Control.id)
            .filter(Control.organization_id == organization_id, SoAEntry.id.is_(None))
            .order_by(Control.control_id)
            .all()
        )
        for control in controls:
            entry = SoAEntry(
                organization_id=organization_id,
                control=control,
                is_applicable=True,
                created_by_id=actor.user_id,
                approval_status=ApprovalStatus.DRAFT,
                version_tenths=INITIAL_VERSION.tenths,
            )
            db.session.add(entry)
            db.session.flush()
            version_store.upsert_snapshot(
                entry, INITIAL_VERSION, action=SNAPSHOT_DRAFT_AND_REVIEW,
                change_description=f"SoA entry created for {control.control_id}",
                actor=actor, created_by_id=actor.user_id,
            )
            created.append(entry)

        if created:
            write_audit(
                entity_type="soa", entity_id=organization_id, action="CREATE",
                actor=actor.display_name, actor_user_id=actor.user_id, organization_id=organization_id,
                new_values={"initialized_entries": len(created)},
            )

    logger.info(
        "SoA initialised with %d new entries", len(created),
        extra={"organization_id": organization_id, "entity_type": "soa_entry",
               "actor_id": actor.user_id, "action": "initialize"},
    )
    return created


# ── Edits ────────────────────────────────────────────────────────────────


def get_entry(actor: ActorContext, entry_id) -> SoAEntry:
    entry = soa_workflow.get(entry_id)
    ensure_member(actor, entry.organization_id)
    return entry


def _apply_entry_changes(actor, entry, changes):
    result = apply_changes(
        entry, changes, actor, allowed_fields=EDITABLE_FIELDS, entity_label=soa_workflow.describe(entry),
    )
    if result.changed:
        write_audit(
            entity_type=SoAEntry.ENTITY_TYPE, entity_id=entry.id, action="UPDATE",
            actor=actor.display_name, actor_user_id=actor.user_id, organization_id=entry.organization_id,
            old_values=result.old_values(), new_values=result.new_values(),
        )
    return result


def update_entry(actor: ActorContext, entry_id, data: dict, *, expected_version=None) -> SoAEntry:
    """Edit one entry.  ADMIN, LOCAL_ADMIN and AUDITOR members may edit."""
    changes = _coerce_changes(data)
    with unit_of_work("SoA entry"):
        entry = soa_workflow.get(entry_id)
        _ensure_editor(actor, entry.organization_id)
        soa_workflow.check_expected_version(entry, expected_version)
        _apply_entry_changes(actor, entry, changes)
    return entry


def bulk_update(actor: ActorContext, organization_id, updates: list) -> int:
    """Apply several entry edits atomically; returns how many entries changed."""
    if not isinstance(updates, list):
        raise ValidationError("Updates must be an array", details={"updates": "invalid"})
    parsed = []
    for item in updates:
        if not isinstance(item, dict) or "id" not in item:
            raise ValidationError("Each update needs an id", details={"updates": "invalid"})
        parsed.append((item["id"], _coerce_changes({k: v for k, v in item.items() if k != "id"})))

    _ensure_editor(actor, organization_id)
    changed = 0
    with unit_of_work("SoA entry"):
        for entry_id, changes in parsed:
            entry = soa_workflow.get(entry_id)
            if entry.organization_id != organization_id:
                raise NotFoundError(resource="SoA entry", resource_id=entry_id)
            if _apply_entry_changes(actor, entry, changes).changed:
                changed += 1
    return changed


# ── Bulk submit ──────────────────────────────────────────────────────────


def bulk_submit(actor: ActorContext, organization_id, change_description=None) -> list[SoAEntry]:
    """Submit every DRAFT / REJECTED entry for 1st level approval without a version bump."""
    description = parse_text(change_description, "change_description", required=False) or "Bulk submission for review"
    get_or_raise(Organization, organization_id, "Organization")
    ensure_can_write(actor, organization_id, "the SoA", action="submit_for_review")

    outbox = NotificationOutbox()
    with unit_of_work("SoA entry"):
        entries = (
            SoAEntry.query.filter(
                SoAEntry.organization_id == organization_id,
                SoAEntry.approval_status.in_([ApprovalStatus.DRAFT, ApprovalStatus.REJECTED]),
            )
            .all()
        )
        if not entries:
            raise ValidationError("No draft entries to submit")

        for entry in entries:
            entry.approval_status = ApprovalStatus.PENDING_FIRST_APPROVAL
            version_store.upsert_snapshot(
                entry, entry.version, action=SNAPSHOT_SUBMITTED, change_description=description,
                actor=actor, created_by_id=actor.user_id,
            )
        write_audit(
            entity_type="soa", entity_id=organization_id, action="UPDATE",
            actor=actor.display_name, actor_user_id=actor.user_id, organization_id=organization_id,
            new_values={"bulk_submitted": len(entries), "change_description": description},
        )
        outbox.add(
            NotificationService.reviewers_for(organization_id, exclude_user_id=actor.user_id),
            organization_id=organization_id, type="APPROVAL_REQUIRED",
            title=f"{len(entries)} SoA entries await 1st level approval",
            message=f"Submitted by {actor.display_name}: {description}",
            link="/soa",
        )

    logger.info(
        "Bulk-submitted %d SoA entries", len(entries),
        extra={"organization_id": organization_id, "entity_type": "soa_entry",
               "actor_id": actor.user_id, "action": "bulk_submit"},
    )
    outbox.deliver()
    return entries


# ── Queries ──────────────────────────────────────────────────────────────


def list_entries(actor: ActorContext, organization_id, *, applicable=None, approval_status=None, search=None):
    """Entries ordered by control reference, plus organization-wide statistics."""
    ensure_member(actor, organization_id)
    q = SoAEntry.query.join(Control, SoAEntry.control_ref_id == Control.id).filter(
        SoAEntry.organization_id == organization_id,
    )
    if applicable is not None:
        q = q.filter(SoAEntry.is_applicable.is_(parse_bool(applicable)))
    if approval_status:
        q = q.filter(SoAEntry.approval_status == approval_status)
    if search:
        pattern = f"%{search}%"
        q = q.filter(or_(Control.control_id.ilike(pattern), Control.name.ilike(pattern)))
    entries = q.order_by(Control.control_id).all()
    return entries, soa_stats(organization_id)


def soa_stats(organization_id) -> dict:
    rows = SoAEntry.query.filter_by(organization_id=organization_id).all()
    applicable = [e for e in rows if e.is_applicable]
    return {
        "total": len(rows),
        "applicable": len(applicable),
        "not_applicable": len(rows) - len(applicable),
        "implemented": sum(1 for e in applicable if e.status == "IMPLEMENTED"),
        "in_progress": sum(1 for e in applicable if e.status == "IN_PROGRESS"),
        "not_started": sum(1 for e in applicable if e.status == "NOT_STARTED"),
        "pending_approval": sum(1 for e in rows if e.approval_status in ApprovalStatus.PENDING),
    }


def pending_approvals(actor: ActorContext, organization_id):
    ensure_member(actor, organization_id)
    return (
        SoAEntry.query.join(Control, SoAEntry.control_ref_id == Control.id)
        .filter(
            SoAEntry.organization_id == organization_id,
            SoAEntry.approval_status.in_(sorted(ApprovalStatus.PENDING)),
        )
        .order_by(Control.control_id)
        .all()
    )


# ── Export ───────────────────────────────────────────────────────────────

CSV_COLUMNS = [
    "Control No", "Control Name", "Control", "Category", "Source", "Applicability",
    "Status", "Control Owner", "Justification", "Documentation References", "Comments",
    "Version", "Approval Status",
]


def export_entries(actor: ActorContext, organization_id) -> dict:
    """Full Statement of Applicability for one organization.

    Returns:
        dict with 'organization' (name, slug), 'generated_at', the control
        totals, 'by_category' (entries grouped by control category) and the
        flat 'entries' list, both ordered by control reference.
    """
    org = get_or_raise(Organization, organization_id, "Organization")
    ensure_member(actor, organization_id)
    entries = (
        SoAEntry.query.join(Control, SoAEntry.control_ref_id == Control.id)
        .filter(SoAEntry.organization_id == organization_id)
        .order_by(Control.control_id)
        .all()
    )
    rows = [e.to_dict() for e in entries]

    by_category = {}
    for row in rows:
        by_category.setdefault(row["control"]["category"], []).append(row)

    return {
        "organization": {"id": org.id, "name": org.name, "slug": org.slug},
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "total_controls": len(rows),
        "applicable_controls": sum(1 for row in rows if row["is_applicable"]),
        "by_category": [
            {"category": category, "controls": controls}
            for category, controls in sorted(by_category.items())
        ],
        "entries": rows,
    }


def generate_soa_csv(export: dict) -> str:
    """Render an ``export_entries`` result as CSV, one row per control."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_COLUMNS)
    for row in export["entries"]:
        control = row["control"]
        writer.writerow([
            control["control_id"],
            control["name"],
            control["description"] or "",
            control["category"],
            row["control_source"],
            "Yes" if row["is_applicable"] else "No",
            row["status"],
            row["control_owner"] or "",
            row["justification"] or "",
            row["documentation_references"] or "",
            row["comments"] or "",
            row["version"],
            row["approval_status"],
        ])
    return buf.getvalue()
