"""
GRC Platform
Audit blueprint.

Endpoints:
    GET  /api/v1/audit-logs               — list / filter an organization's audit logs
    GET  /api/v1/audit-logs/<int:log_id>  — single audit entry
"""

from flask import Blueprint, request

from grc.blueprints import current_actor, int_arg, ok
from grc.core.exceptions import NotFoundError
from grc.models import db
from grc.models.audit import AuditLog
from grc.services.mutation_guard import ensure_member

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


# ── List / filter ────────────────────────────────────────────────────────────

@audit_bp.route("/audit-logs", methods=["GET"])
def list_audit_logs():
    """
    Return paginated audit logs, newest first.

    Query params:
        organization_id — required; caller must be a member
        entity_type     — filter by entity type
        entity_id       — filter by entity PK
        action          — filter by action (CREATE, UPDATE, DELETE, APPROVE, REJECT)
        actor_user_id   — filter by acting user
        page            — page number (default 1)
        per_page        — items per page (default 50, max 200)
    """
    org_id = int_arg("organization_id", required=True)
    ensure_member(current_actor(), org_id)

    q = AuditLog.query.filter(AuditLog.organization_id == org_id)

    entity_type = request.args.get("entity_type")
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action == action.upper())

    actor_user_id = int_arg("actor_user_id")
    if actor_user_id is not None:
        q = q.filter(AuditLog.actor_user_id == actor_user_id)

    q = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())

    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(200, max(1, request.args.get("per_page", 50, type=int)))

    paginated = q.paginate(page=page, per_page=per_page, error_out=False)

    return ok({
        "audit_logs": [log.to_dict() for log in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    })


@audit_bp.route("/audit-logs/<int:log_id>", methods=["GET"])
def get_audit_log(log_id):
    log = db.session.get(AuditLog, log_id)
    if log is None:
        raise NotFoundError(resource="Audit log", resource_id=log_id)
    if log.organization_id is not None:
        ensure_member(current_actor(), log.organization_id)
    return ok(log.to_dict())
