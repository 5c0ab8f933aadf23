"""
GRC Platform
Notification Service.

Central service for creating and querying in-app notifications, plus the
NotificationOutbox that workflow operations use to send them only after
their own transaction has committed.

Delivery is best effort: a failed notification is logged and dropped, it
never fails or rolls back the operation that produced it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app, has_app_context

from grc.core.exceptions import NotFoundError
from grc.models import db
from grc.models.auth import ROLE_ADMIN, ROLE_LOCAL_ADMIN, OrganizationMember
from grc.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, user_id, title, message="", type="SYSTEM", organization_id=None, link=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            user_id=user_id,
            organization_id=organization_id,
            type=type,
            title=title,
            message=message,
            link=link,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, organization_id=None, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a user, newest first.
        """
        q = Notification.query.filter_by(user_id=user_id)
        if organization_id:
            q = q.filter_by(organization_id=organization_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(user_id, organization_id=None):
        """Return count of unread notifications."""
        q = Notification.query.filter_by(user_id=user_id, is_read=False)
        if organization_id:
            q = q.filter_by(organization_id=organization_id)
        return q.count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, user_id):
        """Mark one of the user's notifications as read."""
        notif = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
        if notif is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id, organization_id=None):
        """Mark all notifications for a user as read."""
        q = Notification.query.filter_by(user_id=user_id, is_read=False)
        if organization_id:
            q = q.filter_by(organization_id=organization_id)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count

    # ── Recipient resolution ──────────────────────────────────────────────

    @staticmethod
    def members_with_roles(organization_id, roles, exclude_user_id=None):
        """User ids of organization members holding any of ``roles``."""
        q = OrganizationMember.query.filter(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.role.in_(list(roles)),
        )
        ids = [m.user_id for m in q.all()]
        return [uid for uid in ids if uid != exclude_user_id]

    @staticmethod
    def reviewers_for(organization_id, exclude_user_id=None):
        return NotificationService.members_with_roles(
            organization_id, (ROLE_LOCAL_ADMIN, ROLE_ADMIN), exclude_user_id,
        )

    @staticmethod
    def approvers_for(organization_id, exclude_user_id=None):
        return NotificationService.members_with_roles(organization_id, (ROLE_ADMIN,), exclude_user_id)


# ═════════════════════════════════════════════════════════════════════════════
# Outbox
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PendingNotification:
    user_id: int
    organization_id: int | None
    type: str
    title: str
    message: str = ""
    link: str | None = None


class NotificationOutbox:
    """
    Collects notifications during a workflow transaction.

    Nothing is written until ``deliver()`` is called, which the workflow does
    only after its commit succeeded.  A rolled-back operation therefore
    never notifies anyone.
    """

    def __init__(self, enabled=None):
        if enabled is None:
            enabled = current_app.config.get("NOTIFICATIONS_ENABLED", True) if has_app_context() else True
        self.enabled = enabled
        self._pending: list[PendingNotification] = []

    def __len__(self):
        return len(self._pending)

    @property
    def pending(self):
        return tuple(self._pending)

    def add(self, user_ids, *, organization_id, type, title, message="", link=None):
        seen = set()
        for uid in user_ids:
            if uid is None or uid in seen:
                continue
            seen.add(uid)
            self._pending.append(PendingNotification(
                user_id=uid, organization_id=organization_id, type=type,
                title=title, message=message, link=link,
            ))

    def clear(self):
        self._pending.clear()

    def deliver(self) -> int:
        """Write every queued notification; return how many were stored."""
        if not self.enabled:
            self.clear()
            return 0

        delivered = 0
        for item in self._pending:
            try:
                NotificationService.create(
                    user_id=item.user_id,
                    organization_id=item.organization_id,
                    type=item.type,
                    title=item.title,
                    message=item.message,
                    link=item.link,
                )
                delivered += 1
            except Exception:
                db.session.rollback()
                logger.warning(
                    "Notification delivery failed",
                    exc_info=True,
                    extra={
                        "organization_id": item.organization_id,
                        "recipient_id": item.user_id,
                        "action": item.type,
                    },
                )
        self.clear()
        return delivered
