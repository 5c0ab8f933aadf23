"""
Entity mutation guard.

Every field-level edit of a versioned entity goes through ``apply_changes``.
Any effective change to an APPROVED entity demotes it to DRAFT in the same
flush, so an approved record always shows exactly what went through both
approval stages.  The version number is not touched here; it only moves on
submit-for-review / new-revision.
"""

from dataclasses import dataclass, field

from grc.core.actor import ActorContext
from grc.core.exceptions import AuthorizationError, InvalidStateTransitionError, ValidationError
from grc.models import db
from grc.models.versioning import ApprovalStatus


@dataclass
class MutationResult:
    changes: dict = field(default_factory=dict)
    demoted: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)

    def old_values(self) -> dict:
        return {k: v[0] for k, v in self.changes.items()}

    def new_values(self) -> dict:
        return {k: v[1] for k, v in self.changes.items()}


def ensure_member(actor: ActorContext, organization_id: int, action: str = "read") -> None:
    if not (actor.is_global_admin or actor.is_member(organization_id)):
        raise AuthorizationError(
            "You are not a member of this organization", actor_id=actor.user_id, action=action,
        )


def ensure_can_write(actor: ActorContext, organization_id: int, what: str, action: str = "edit") -> None:
    """Membership / viewer check shared by create and edit operations."""
    ensure_member(actor, organization_id, action)
    if not actor.is_global_admin and actor.is_viewer_in(organization_id):
        raise AuthorizationError(f"Viewers cannot modify {what}", actor_id=actor.user_id, action=action)


def ensure_can_edit(actor: ActorContext, entity, entity_label: str) -> None:
    ensure_can_write(actor, entity.organization_id, entity_label)


def apply_changes(
    entity,
    changes: dict,
    actor: ActorContext,
    *,
    allowed_fields,
    entity_label: str,
    on_demote=None,
) -> MutationResult:
    """Apply whitelisted ``changes`` to ``entity`` and demote APPROVED → DRAFT.

    Args:
        entity: A VersionedMixin instance.
        changes: Field → new value.  Values must already be coerced.
        actor: Who is editing.  VIEWERs and non-members are refused.
        allowed_fields: Fields callers may set; anything else is a ValidationError.
        entity_label: Used in error messages, e.g. "Risk RISK-004".
        on_demote: Optional callable(entity) run when a demotion happens.

    Returns:
        MutationResult with the effective {field: (old, new)} map.
    """
    unknown = sorted(set(changes) - set(allowed_fields))
    if unknown:
        raise ValidationError(
            f"Fields cannot be updated: {', '.join(unknown)}",
            details={f: "not editable" for f in unknown},
        )

    ensure_can_edit(actor, entity, entity_label)

    if entity.approval_status == ApprovalStatus.CLOSED:
        raise InvalidStateTransitionError(entity_label, "edit", entity.approval_status, "entity is closed")

    result = MutationResult()
    for name, value in changes.items():
        old = getattr(entity, name)
        if old != value:
            setattr(entity, name, value)
            result.changes[name] = (old, value)

    if result.changed and entity.approval_status == ApprovalStatus.APPROVED:
        entity.approval_status = ApprovalStatus.DRAFT
        result.demoted = True
        result.changes["approval_status"] = (ApprovalStatus.APPROVED, ApprovalStatus.DRAFT)
        if on_demote is not None:
            on_demote(entity)

    if result.changed:
        db.session.flush()
    return result
