"""
GRC Platform
Notification blueprint: the acting user's in-app inbox.

Endpoints:
    GET   /api/v1/notifications                 — list (newest first)
    GET   /api/v1/notifications/unread-count    — badge count
    PATCH /api/v1/notifications/<id>/read       — mark one read
    POST  /api/v1/notifications/mark-all-read   — mark all read
"""

from flask import Blueprint, request

from grc.blueprints import current_actor, int_arg, json_body, ok
from grc.services.notification import NotificationService
from grc.utils.helpers import parse_bool

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)
    items, total = NotificationService.list_for_user(
        current_actor().user_id,
        organization_id=int_arg("organization_id"),
        unread_only=parse_bool(request.args.get("unread_only")),
        limit=limit, offset=offset,
    )
    return ok({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    count = NotificationService.unread_count(current_actor().user_id, int_arg("organization_id"))
    return ok({"unread_count": count})


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["PATCH"])
def mark_read(notification_id):
    notif = NotificationService.mark_read(notification_id, current_actor().user_id)
    return ok(notif.to_dict())


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_read():
    data = json_body()
    count = NotificationService.mark_all_read(current_actor().user_id, int_arg("organization_id", data=data))
    return ok({"marked_read": count}, f"{count} notifications marked read")
