"""
Organization-level documents: the Risk Register and the SoA cover documents.

Each organization owns at most one document per kind, created lazily on first
access at v0.1 / DRAFT.  Documents use the designated ``reviewer_id`` /
``approver_id`` as approval gates; when nobody is designated the usual
entity-level role gates apply.  Only documents support new_revision and
discard_revision.

Usage:
    from grc.services.document_service import get_or_create_document, workflow_for

    doc = get_or_create_document(actor, org_id, "risk_register")
    workflow_for("risk_register").new_revision(doc.id, actor, "Annual refresh")
"""

import logging

from grc.core.actor import ActorContext
from grc.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from grc.models import db
from grc.models.audit import write_audit
from grc.models.auth import ROLE_ADMIN, ROLE_LOCAL_ADMIN, Organization, OrganizationMember
from grc.models.document import RiskRegisterDocument, SoADocument
from grc.models.versioning import SNAPSHOT_DRAFT_AND_REVIEW, ApprovalStatus
from grc.services import version_store
from grc.services.approval_workflow import ApprovalWorkflow, unit_of_work
from grc.services.mutation_guard import apply_changes, ensure_member
from grc.services.version_numbers import INITIAL_VERSION
from grc.utils.helpers import get_or_raise, parse_text

logger = logging.getLogger(__name__)

CONTENT_FIELDS = ("title", "identification", "classification", "purpose", "scope")
ASSIGNMENT_FIELDS = ("reviewer_id", "approver_id")
EDITABLE_FIELDS = frozenset(CONTENT_FIELDS + ASSIGNMENT_FIELDS)


class DocumentWorkflow(ApprovalWorkflow):
    """Approval workflow gated by the document's designated reviewer / approver."""

    def describe(self, document):
        return document.title or self.label

    def is_reviewer(self, actor: ActorContext, document) -> bool:
        if actor.is_global_admin:
            return True
        if document.reviewer_id is None:
            return super().is_reviewer(actor, document)
        return document.reviewer_id == actor.user_id

    def is_approver(self, actor: ActorContext, document) -> bool:
        if actor.is_global_admin:
            return True
        if document.approver_id is None:
            return super().is_approver(actor, document)
        return document.approver_id == actor.user_id

    def reviewer_recipients(self, document, actor: ActorContext) -> list:
        if document.reviewer_id is None:
            return super().reviewer_recipients(document, actor)
        return [] if document.reviewer_id == actor.user_id else [document.reviewer_id]

    def approver_recipients(self, document, actor: ActorContext) -> list:
        if document.approver_id is None:
            return super().approver_recipients(document, actor)
        return [] if document.approver_id == actor.user_id else [document.approver_id]

    def restore_from_payload(self, document, payload: dict) -> None:
        for name in CONTENT_FIELDS:
            if name in payload:
                setattr(document, name, payload[name])


DOCUMENT_KINDS = {
    "risk_register": (RiskRegisterDocument, DocumentWorkflow(
        RiskRegisterDocument, label="Risk Register document", document_level=True, link_prefix="/risks/document",
    )),
    "soa": (SoADocument, DocumentWorkflow(
        SoADocument, label="SoA document", document_level=True, link_prefix="/soa/document",
    )),
}


def _kind(kind):
    try:
        return DOCUMENT_KINDS[kind]
    except KeyError:
        raise ValidationError(
            f"Unknown document kind. Must be one of: {', '.join(sorted(DOCUMENT_KINDS))}",
            details={"kind": "invalid"},
        ) from None


def workflow_for(kind) -> DocumentWorkflow:
    return _kind(kind)[1]


def get_or_create_document(actor: ActorContext, organization_id, kind):
    """Return the organization's document of ``kind``, creating v0.1 / DRAFT on first access."""
    model, workflow = _kind(kind)
    get_or_raise(Organization, organization_id, "Organization")
    ensure_member(actor, organization_id)

    document = model.query.filter_by(organization_id=organization_id).first()
    if document is not None:
        return document
    # Viewers read only; the first writer creates the document
    if not actor.is_global_admin and actor.is_viewer_in(organization_id):
        raise NotFoundError(resource=workflow.label)

    with unit_of_work(workflow.label):
        document = model(
            organization_id=organization_id,
            title=model.DEFAULT_TITLE,
            created_by_id=actor.user_id,
            approval_status=ApprovalStatus.DRAFT,
        )
        document.version = INITIAL_VERSION
        db.session.add(document)
        db.session.flush()
        version_store.upsert_snapshot(
            document, document.version, action=SNAPSHOT_DRAFT_AND_REVIEW,
            change_description=f"Initial {model.DEFAULT_TITLE} document",
            actor=actor, created_by_id=actor.user_id,
        )
        write_audit(
            entity_type=model.ENTITY_TYPE, entity_id=document.id, action="CREATE",
            actor=actor.display_name, actor_user_id=actor.user_id, organization_id=organization_id,
            new_values={"title": document.title, "version": str(document.version)},
        )

    logger.info(
        "%s created", workflow.label,
        extra={"organization_id": organization_id, "entity_type": model.ENTITY_TYPE,
               "entity_id": document.id, "actor_id": actor.user_id, "action": "create"},
    )
    return document


def _check_assignee(organization_id, field_name, user_id):
    if user_id is None:
        return None
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a user id", details={field_name: "invalid"}) from None
    member = OrganizationMember.query.filter_by(organization_id=organization_id, user_id=user_id).first()
    if member is None:
        raise ValidationError(
            f"{field_name} must be a member of this organization", details={field_name: "not a member"},
        )
    return user_id


def update_document(actor: ActorContext, organization_id, kind, data: dict, *, expected_version=None):
    """Edit document fields.  Assigning reviewer / approver needs an org admin."""
    model, workflow = _kind(kind)
    unknown = sorted(set(data) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(
            f"Fields cannot be updated: {', '.join(unknown)}",
            details={f: "not editable" for f in unknown},
        )
    changes = dict(data)
    for name in CONTENT_FIELDS:
        if name in changes:
            changes[name] = parse_text(changes[name], name, required=name in ("title", "classification"))

    document = get_or_create_document(actor, organization_id, kind)
    if any(name in changes for name in ASSIGNMENT_FIELDS):
        if not actor.has_role_in(organization_id, ROLE_ADMIN, ROLE_LOCAL_ADMIN):
            raise AuthorizationError(
                "Only organization admins can assign reviewers and approvers",
                actor_id=actor.user_id, action="assign",
            )
        for name in ASSIGNMENT_FIELDS:
            if name in changes:
                changes[name] = _check_assignee(organization_id, name, changes[name])

    with unit_of_work(workflow.label):
        workflow.check_expected_version(document, expected_version)
        result = apply_changes(
            document, changes, actor, allowed_fields=EDITABLE_FIELDS, entity_label=workflow.describe(document),
        )
        if result.changed:
            write_audit(
                entity_type=model.ENTITY_TYPE, entity_id=document.id, action="UPDATE",
                actor=actor.display_name, actor_user_id=actor.user_id, organization_id=organization_id,
                old_values=result.old_values(), new_values=result.new_values(),
            )
    if result.demoted:
        logger.info(
            "%s edited after approval; back to DRAFT", workflow.label,
            extra={"organization_id": organization_id, "entity_type": model.ENTITY_TYPE,
                   "entity_id": document.id, "actor_id": actor.user_id, "action": "edit"},
        )
    return document
