"""
GRC Platform
Blueprint registry: shared request helpers and error handlers.

Every API blueprint reads the acting user from ``g.actor`` (set by the actor
context middleware) and passes it to the service layer.  Services raise the
exceptions in ``grc.core.exceptions``; ``register_error_handlers`` turns them
into ``api_error`` responses so routes contain no error plumbing.
"""

import logging

from flask import g, jsonify, request
from werkzeug.exceptions import HTTPException

from grc.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from grc.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── Request helpers ──────────────────────────────────────────────────────


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def current_actor():
    return g.actor


def int_arg(name, *, required=False, data=None):
    """Integer from ``data`` (a JSON body) or the query string; ValidationError when malformed."""
    raw = data.get(name) if data is not None else None
    if raw in (None, ""):
        raw = request.args.get(name)
    if raw in (None, ""):
        if required:
            raise ValidationError(f"{name} is required", details={name: "required"})
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", details={name: "invalid"}) from None


def ok(data, message=None, status=200):
    return jsonify({"data": data, "message": message}), status


# ── Error handlers ───────────────────────────────────────────────────────


def register_error_handlers(app):
    """Map service exceptions to HTTP responses."""

    @app.errorhandler(ValidationError)
    def _validation(exc):
        code = E.VALIDATION_REQUIRED if "required" in exc.details.values() else E.VALIDATION_INVALID
        return api_error(code, str(exc), details=exc.details)

    @app.errorhandler(InvalidStateTransitionError)
    def _invalid_transition(exc):
        return api_error(
            E.INVALID_TRANSITION, str(exc),
            details={"action": exc.action, "current_status": exc.current_status},
        )

    @app.errorhandler(AuthorizationError)
    def _forbidden(exc):
        logger.info(
            "Forbidden: %s", exc,
            extra={"actor_id": exc.actor_id, "action": exc.action, "path": request.path},
        )
        details = {"action": exc.action} if exc.action else None
        return api_error(E.FORBIDDEN, str(exc), details=details)

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(E.NOT_FOUND, str(exc), details={"resource": exc.resource})

    @app.errorhandler(ConflictError)
    def _conflict(exc):
        details = {"field": exc.field}
        if exc.value is not None:
            details["current"] = exc.value
        return api_error(E.CONFLICT_STATE, str(exc), details=details)

    @app.errorhandler(404)
    def _route_not_found(exc):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(exc):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def _rate_limited(exc):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": exc.description})

    @app.errorhandler(Exception)
    def _unexpected(exc):
        if isinstance(exc, HTTPException):
            return exc
        logger.error("Unhandled error on %s %s", request.method, request.path, exc_info=exc)
        if request.path.startswith("/api/"):
            return api_error(E.INTERNAL, "Internal server error")
        raise exc


# ── Shared approval / version routes ─────────────────────────────────────


def register_approval_routes(bp, rule, workflow, serialize):
    """Add the two-stage approval and version-history routes for one entity kind.

    ``rule`` is the item URL, e.g. ``/risks/<int:entity_id>``.  Transition
    bodies may carry ``expected_version``; a stale value yields 409.
    """

    def submit_for_review(entity_id):
        data = json_body()
        entity = workflow.submit_for_review(
            entity_id, current_actor(), data.get("change_description"),
            data.get("version_bump", "none"), expected_version=data.get("expected_version"),
        )
        return ok(serialize(entity), "Submitted for review")

    def first_approval(entity_id):
        data = json_body()
        entity = workflow.first_approval(
            entity_id, current_actor(), data.get("comments"), expected_version=data.get("expected_version"),
        )
        return ok(serialize(entity), "1st level approval recorded")

    def second_approval(entity_id):
        data = json_body()
        entity = workflow.second_approval(
            entity_id, current_actor(), data.get("comments"), expected_version=data.get("expected_version"),
        )
        return ok(serialize(entity), "Approved")

    def reject(entity_id):
        data = json_body()
        entity = workflow.reject(
            entity_id, current_actor(), data.get("reason"), expected_version=data.get("expected_version"),
        )
        return ok(serialize(entity), "Rejected")

    def list_versions(entity_id):
        snapshots = workflow.list_versions(entity_id, current_actor())
        return ok([s.to_dict() for s in snapshots])

    def update_version(entity_id, snapshot_id):
        data = json_body()
        snapshot = workflow.update_version_description(
            entity_id, snapshot_id, current_actor(), data.get("change_description"),
        )
        return ok(snapshot.to_dict(), "Version description updated")

    bp.add_url_rule(f"{rule}/submit-for-review", view_func=submit_for_review, methods=["POST"])
    bp.add_url_rule(f"{rule}/first-approval", view_func=first_approval, methods=["POST"])
    bp.add_url_rule(f"{rule}/second-approval", view_func=second_approval, methods=["POST"])
    bp.add_url_rule(f"{rule}/reject", view_func=reject, methods=["POST"])
    bp.add_url_rule(f"{rule}/versions", view_func=list_versions, methods=["GET"])
    bp.add_url_rule(f"{rule}/versions/<int:snapshot_id>", view_func=update_version, methods=["PATCH"])
