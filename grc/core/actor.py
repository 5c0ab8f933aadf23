"""
ActorContext: who is performing an operation, and in which organizations.

Every workflow operation receives an ActorContext explicitly; nothing in the
service layer reads ``flask.g`` or the request.  The HTTP layer builds one per
request in ``grc.middleware.actor_context``; tests build them directly.

Usage:
    from grc.core.actor import ActorContext

    actor = ActorContext.for_user(user)
    actor.role_in(org_id)        # "LOCAL_ADMIN" or None
"""

from dataclasses import dataclass, field

from grc.models.auth import ROLE_ADMIN, ROLE_VIEWER


@dataclass(frozen=True)
class ActorContext:
    user_id: int
    display_name: str
    role: str
    designation: str | None = None
    memberships: dict = field(default_factory=dict)

    @classmethod
    def for_user(cls, user) -> "ActorContext":
        return cls(
            user_id=user.id,
            display_name=user.full_name,
            role=user.role,
            designation=user.designation,
            memberships={m.organization_id: m.role for m in user.memberships},
        )

    @property
    def is_global_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def role_in(self, organization_id: int) -> str | None:
        return self.memberships.get(organization_id)

    def is_member(self, organization_id: int) -> bool:
        return organization_id in self.memberships

    def is_viewer_in(self, organization_id: int) -> bool:
        return self.role_in(organization_id) == ROLE_VIEWER

    def has_role_in(self, organization_id: int, *roles: str) -> bool:
        """True when the actor is a global admin or holds one of ``roles`` in the org."""
        return self.is_global_admin or self.role_in(organization_id) in roles

    def designation_in(self, organization_id: int) -> str:
        """Title recorded on version snapshots: job title, else member role, else global role."""
        return self.designation or self.role_in(organization_id) or self.role
