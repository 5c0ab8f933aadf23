"""Risk register service layer.

Transaction policy: every public function is one unit of work and commits
(or rolls back) itself.  Workflow transitions live on ``risk_workflow``.

Operations:
- Risk create / update / delete with inherent score recomputation
- Treatment recording (residual rating, treatment days)
- Retirement (RiskWorkflow.apply_retirement)
- Control links (link_controls)
- Queries: list, pending approvals, retired, 5×5 heatmap
"""
import logging
import math
from datetime import datetime, time, timezone

from sqlalchemy import or_

from grc.core.actor import ActorContext
from grc.core.exceptions import AuthorizationError, InvalidStateTransitionError, ValidationError
from grc.models import db
from grc.models.audit import write_audit
from grc.models.auth import ROLE_ADMIN, ROLE_LOCAL_ADMIN, Organization
from grc.models.risk import (
    RISK_RESPONSES,
    RISK_STATUSES,
    RISK_TREATMENTS,
    Risk,
    RiskControl,
    RiskRetirement,
    RiskTreatment,
)
from grc.models.soa import Control
from grc.models.versioning import SNAPSHOT_DRAFT_AND_REVIEW, ApprovalStatus, VersionSnapshot
from grc.services import version_store
from grc.services.approval_workflow import ApprovalWorkflow, unit_of_work
from grc.services.mutation_guard import apply_changes, ensure_can_edit, ensure_can_write, ensure_member
from grc.services.version_numbers import INITIAL_VERSION
from grc.utils.helpers import get_or_raise, next_sequential_code, parse_date_input, parse_score, parse_text

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({
    "title", "description", "category", "likelihood", "impact",
    "control_description", "controls_reference", "treatment", "treatment_plan",
    "treatment_due_date", "status", "owner_id", "last_reviewed_on", "comments",
})
_DERIVED_FIELDS = frozenset({"inherent_risk", "residual_probability", "residual_impact", "residual_risk"})
_TEXT_FIELDS = ("description", "category", "control_description", "controls_reference", "treatment_plan", "comments")


# ── Workflow ─────────────────────────────────────────────────────────────


class RiskWorkflow(ApprovalWorkflow):
    def describe(self, risk):
        return f"Risk {risk.risk_code}"

    def apply_retirement(self, risk, actor, reason):
        now = datetime.now(timezone.utc)
        risk.status = "CLOSED"
        risk.is_retired = True
        risk.retirement_date = now
        risk.retirement_reason = reason
        record = RiskRetirement(reason=reason, retired_by_id=actor.user_id, retired_at=now)
        risk.retirement = record
        db.session.flush()
        return record


risk_workflow = RiskWorkflow(Risk, label="Risk", supports_retire=True, link_prefix="/risks")


# ── Input coercion ───────────────────────────────────────────────────────


def _coerce_changes(data: dict) -> dict:
    unknown = sorted(set(data) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(
            f"Fields cannot be updated: {', '.join(unknown)}",
            details={f: "not editable" for f in unknown},
        )

    changes = dict(data)
    if "title" in changes:
        changes["title"] = parse_text(changes["title"], "title")
    for name in _TEXT_FIELDS:
        if name in changes:
            changes[name] = parse_text(changes[name], name, required=False)
    for name in ("treatment", "status"):
        if name in changes:
            changes[name] = parse_text(changes[name], name)
    for name in ("likelihood", "impact"):
        if name in changes:
            changes[name] = parse_score(changes[name], name)
    if "treatment" in changes and changes["treatment"] not in RISK_TREATMENTS:
        raise ValidationError(
            f"Invalid treatment. Must be one of: {', '.join(sorted(RISK_TREATMENTS))}",
            details={"treatment": "invalid"},
        )
    if "status" in changes:
        if changes["status"] == "CLOSED":
            raise ValidationError("Use the retire action to close a risk", details={"status": "invalid"})
        if changes["status"] not in RISK_STATUSES:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(sorted(RISK_STATUSES - {'CLOSED'}))}",
                details={"status": "invalid"},
            )
    for name in ("treatment_due_date", "last_reviewed_on"):
        if name in changes:
            changes[name] = parse_date_input(changes[name], name)
    return changes


# ── Risk CRUD ────────────────────────────────────────────────────────────


def create_risk(actor: ActorContext, organization_id, data: dict) -> Risk:
    """Create a DRAFT risk at v0.1 with its initial "Draft & Review" snapshot."""
    title = parse_text(data.get("title"), "title")
    likelihood = parse_score(data.get("likelihood", 3), "likelihood")
    impact = parse_score(data.get("impact", 3), "impact")
    extra = _coerce_changes({k: v for k, v in data.items() if k not in ("title", "likelihood", "impact")})

    get_or_raise(Organization, organization_id, "Organization")
    ensure_can_write(actor, organization_id, "risks", action="create")

    with unit_of_work("Risk"):
        risk = Risk(
            organization_id=organization_id,
            risk_code=next_sequential_code(Risk, Risk.risk_code, "RISK", organization_id),
            title=title,
            likelihood=likelihood,
            impact=impact,
            created_by_id=actor.user_id,
            approval_status=ApprovalStatus.DRAFT,
            version_tenths=INITIAL_VERSION.tenths,
            **extra,
        )
        risk.recompute_scores()
        db.session.add(risk)
        db.session.flush()

        version_store.upsert_snapshot(
            risk, INITIAL_VERSION, action=SNAPSHOT_DRAFT_AND_REVIEW,
            change_description=f"Initial risk identification: {title}",
            actor=actor, created_by_id=actor.user_id,
        )
        write_audit(
            entity_type=Risk.ENTITY_TYPE, entity_id=risk.id, action="CREATE",
            actor=actor.display_name, actor_user_id=actor.user_id, organization_id=organization_id,
            new_values={"risk_code": risk.risk_code, "title": title, "inherent_risk": risk.inherent_risk},
        )

    logger.info(
        "Risk %s created", risk.risk_code,
        extra={"organization_id": organization_id, "entity_type": "risk", "entity_id": risk.id,
               "actor_id": actor.user_id, "action": "create"},
    )
    return risk


def get_risk(actor: ActorContext, risk_id) -> Risk:
    risk = risk_workflow.get(risk_id)
    ensure_member(actor, risk.organization_id)
    return risk


def update_risk(actor: ActorContext, risk_id, data: dict, *, expected_version=None) -> Risk:
    """Edit whitelisted fields; an APPROVED risk drops back to DRAFT."""
    changes = _coerce_changes(data)

    with unit_of_work("Risk"):
        risk = risk_workflow.get(risk_id)
        ensure_can_edit(actor, risk, risk_workflow.describe(risk))
        risk_workflow.check_expected_version(risk, expected_version)
        likelihood = changes.get("likelihood", risk.likelihood)
        impact = changes.get("impact", risk.impact)
        changes["inherent_risk"] = likelihood * impact

        result = apply_changes(
            risk, changes, actor,
            allowed_fields=EDITABLE_FIELDS | _DERIVED_FIELDS,
            entity_label=risk_workflow.describe(risk),
        )
        if result.changed:
            write_audit(
                entity_type=Risk.ENTITY_TYPE, entity_id=risk.id, action="UPDATE",
                actor=actor.display_name, actor_user_id=actor.user_id,
                organization_id=risk.organization_id,
                old_values=result.old_values(), new_values=result.new_values(),
            )

    if result.demoted:
        logger.info(
            "Risk %s edited after approval; returned to DRAFT", risk.risk_code,
            extra={"organization_id": risk.organization_id, "entity_type": "risk", "entity_id": risk.id,
                   "actor_id": actor.user_id, "action": "edit"},
        )
    return risk


def delete_risk(actor: ActorContext, risk_id) -> None:
    """Hard delete.  Only organization admins (or global admins) may do this."""
    with unit_of_work("Risk"):
        risk = risk_workflow.get(risk_id)
        org_id = risk.organization_id
        ensure_member(actor, org_id, action="delete")
        if not actor.has_role_in(org_id, ROLE_ADMIN, ROLE_LOCAL_ADMIN):
            raise AuthorizationError("Only admins can delete risks", actor_id=actor.user_id, action="delete")

        write_audit(
            entity_type=Risk.ENTITY_TYPE, entity_id=risk.id, action="DELETE",
            actor=actor.display_name, actor_user_id=actor.user_id, organization_id=org_id,
            old_values={"risk_code": risk.risk_code, "title": risk.title, "version": str(risk.version)},
        )
        VersionSnapshot.query.filter_by(
            entity_type=Risk.ENTITY_TYPE, entity_id=str(risk.id),
        ).delete(synchronize_session=False)
        db.session.delete(risk)

    logger.info(
        "Risk %s deleted", risk_id,
        extra={"organization_id": org_id, "entity_type": "risk", "entity_id": risk_id,
               "actor_id": actor.user_id, "action": "delete"},
    )


# ── Treatment ────────────────────────────────────────────────────────────


def _treatment_days(identified_at, implemented_at):
    if not identified_at or not implemented_at:
        return None
    if identified_at.tzinfo is None:
        identified_at = identified_at.replace(tzinfo=timezone.utc)
    seconds = (implemented_at - identified_at).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def add_treatment(actor: ActorContext, risk_id, data: dict, *, expected_version=None) -> RiskTreatment:
    """Record a treatment and copy its residual rating onto the risk."""
    residual_probability = parse_score(data.get("residual_probability"), "residual_probability")
    residual_impact = parse_score(data.get("residual_impact"), "residual_impact")
    response = data.get("risk_response")
    if response not in RISK_RESPONSES:
        raise ValidationError(
            f"risk_response must be one of: {', '.join(sorted(RISK_RESPONSES))}",
            details={"risk_response": "required" if not response else "invalid"},
        )
    impl_date = parse_date_input(data.get("control_implementation_date"), "control_implementation_date")
    implemented_at = datetime.combine(impl_date, time.min, tzinfo=timezone.utc) if impl_date else None

    with unit_of_work("Risk"):
        risk = risk_workflow.get(risk_id)
        ensure_can_edit(actor, risk, risk_workflow.describe(risk))
        risk_workflow.check_expected_version(risk, expected_version)
        residual = residual_probability * residual_impact

        changes = {
            "residual_probability": residual_probability,
            "residual_impact": residual_impact,
            "residual_risk": residual,
            "treatment": response,
            "inherent_risk": risk.likelihood * risk.impact,
        }
        if data.get("control_description"):
            changes["control_description"] = data["control_description"]
        result = apply_changes(
            risk, changes, actor,
            allowed_fields=EDITABLE_FIELDS | _DERIVED_FIELDS,
            entity_label=risk_workflow.describe(risk),
        )

        treatment = RiskTreatment(
            risk_id=risk.id,
            residual_probability=residual_probability,
            residual_impact=residual_impact,
            residual_risk=residual,
            risk_response=response,
            control_description=data.get("control_description"),
            control_implementation_date=implemented_at,
            treatment_days=_treatment_days(risk.identified_at, implemented_at),
            comments=data.get("comments"),
            created_by_id=actor.user_id,
        )
        db.session.add(treatment)
        db.session.flush()

        write_audit(
            entity_type=Risk.ENTITY_TYPE, entity_id=risk.id, action="UPDATE",
            actor=actor.display_name, actor_user_id=actor.user_id, organization_id=risk.organization_id,
            old_values=result.old_values(),
            new_values={**result.new_values(), "treatment_id": treatment.id},
        )

    return treatment


# ── Control links ────────────────────────────────────────────────────────


def _parse_control_ids(value):
    if not isinstance(value, list) or any(isinstance(v, bool) or not isinstance(v, int) for v in value):
        raise ValidationError(
            "control_ids must be a list of control ids",
            details={"control_ids": "required" if value is None else "invalid"},
        )
    return list(dict.fromkeys(value))


def link_controls(actor: ActorContext, risk_id, control_ids, *, expected_version=None) -> Risk:
    """Replace the set of Annex A controls linked to a risk.

    Controls must belong to the risk's organization.  An effective change to
    an APPROVED risk returns it to DRAFT, like any other edit.
    """
    wanted = _parse_control_ids(control_ids)

    with unit_of_work("Risk"):
        risk = risk_workflow.get(risk_id)
        label = risk_workflow.describe(risk)
        ensure_can_edit(actor, risk, label)
        risk_workflow.check_expected_version(risk, expected_version)
        if risk.approval_status == ApprovalStatus.CLOSED:
            raise InvalidStateTransitionError(label, "link controls", risk.approval_status, "entity is closed")

        controls = Control.query.filter(Control.id.in_(wanted)).all() if wanted else []
        found = {c.id for c in controls if c.organization_id == risk.organization_id}
        missing = [cid for cid in wanted if cid not in found]
        if missing:
            raise ValidationError(
                f"Controls not found in this organization: {', '.join(str(c) for c in missing)}",
                details={"control_ids": "invalid"},
            )

        by_id = {c.id: c for c in controls}
        before = [link.control.control_id for link in risk.control_links]
        current = {link.control_ref_id for link in risk.control_links}
        for link in list(risk.control_links):
            if link.control_ref_id not in wanted:
                risk.control_links.remove(link)
        db.session.flush()
        for cid in wanted:
            if cid not in current:
                risk.control_links.append(RiskControl(control_ref_id=cid, control=by_id[cid]))

        changed = current != set(wanted)
        demoted = changed and risk.approval_status == ApprovalStatus.APPROVED
        if demoted:
            risk.approval_status = ApprovalStatus.DRAFT
        if changed:
            db.session.flush()
            after = [link.control.control_id for link in risk.control_links]
            old_values = {"controls": before}
            new_values = {"controls": after}
            if demoted:
                old_values["approval_status"] = ApprovalStatus.APPROVED
                new_values["approval_status"] = ApprovalStatus.DRAFT
            write_audit(
                entity_type=Risk.ENTITY_TYPE, entity_id=risk.id, action="UPDATE",
                actor=actor.display_name, actor_user_id=actor.user_id, organization_id=risk.organization_id,
                old_values=old_values, new_values=new_values,
            )

    if changed:
        logger.info(
            "Risk %s now linked to %d controls", risk.risk_code, len(wanted),
            extra={"organization_id": risk.organization_id, "entity_type": "risk", "entity_id": risk.id,
                   "actor_id": actor.user_id, "action": "link_controls"},
        )
    return risk


# ── Queries ──────────────────────────────────────────────────────────────


def list_risks(actor: ActorContext, organization_id, *, include_retired=False, approval_status=None, search=None):
    ensure_member(actor, organization_id)
    q = Risk.query.filter_by(organization_id=organization_id)
    if not include_retired:
        q = q.filter(Risk.is_retired.is_(False))
    if approval_status:
        q = q.filter(Risk.approval_status == approval_status)
    if search:
        pattern = f"%{search}%"
        q = q.filter(or_(Risk.title.ilike(pattern), Risk.risk_code.ilike(pattern)))
    return q.order_by(Risk.risk_code).all()


def pending_approvals(actor: ActorContext, organization_id):
    ensure_member(actor, organization_id)
    return (
        Risk.query.filter(
            Risk.organization_id == organization_id,
            Risk.approval_status.in_(sorted(ApprovalStatus.PENDING)),
        )
        .order_by(Risk.updated_at.desc())
        .all()
    )


def retired_risks(actor: ActorContext, organization_id):
    ensure_member(actor, organization_id)
    return (
        Risk.query.filter_by(organization_id=organization_id, is_retired=True)
        .order_by(Risk.retirement_date.desc())
        .all()
    )


def compute_heatmap(actor: ActorContext, organization_id):
    """Compute 5×5 heatmap (likelihood × impact) over active risks.

    Returns:
        dict with 'organization_id', 'matrix' (matrix[likelihood-1][impact-1]
        is a list of risk stubs), 'counts' and 'labels'.
    """
    ensure_member(actor, organization_id)
    risks = Risk.query.filter_by(organization_id=organization_id, is_retired=False).all()

    matrix = [[[] for _ in range(5)] for _ in range(5)]
    for r in risks:
        li = max(1, min(5, r.likelihood)) - 1
        im = max(1, min(5, r.impact)) - 1
        matrix[li][im].append({
            "id": r.id, "risk_code": r.risk_code,
            "title": r.title, "inherent_risk": r.inherent_risk,
        })

    return {
        "organization_id": organization_id,
        "matrix": matrix,
        "counts": [[len(cell) for cell in row] for row in matrix],
        "labels": {
            "likelihood": ["Rare", "Unlikely", "Possible", "Likely", "Almost Certain"],
            "impact": ["Insignificant", "Minor", "Moderate", "Major", "Catastrophic"],
        },
    }
