"""
Actor Context Middleware: resolves the acting user for API requests.

Authentication happens upstream; the gateway forwards the authenticated
user's id in the ``X-User-Id`` header.  This middleware:
  1. reads the header on every /api/v1/ request
  2. loads the User with their organization memberships
  3. sets g.actor to an ActorContext the blueprints pass to services

Requests without a valid, active user get 401.

Chain order:
  timing.py  →  actor_context.py  →  route handler
"""

import logging

from flask import g, request

from grc.core.actor import ActorContext
from grc.models import db
from grc.models.auth import User
from grc.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"

# Paths that do not need an actor
ACTOR_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_actor_context(app):
    """Register actor resolution as a before_request hook."""

    @app.before_request
    def _actor_context():
        g.actor = None

        path = request.path
        if not path.startswith("/api/v1/") or request.method == "OPTIONS":
            return None
        for prefix in ACTOR_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        raw = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not raw.isdigit():
            return api_error(E.UNAUTHENTICATED, f"{ACTOR_HEADER} header is required")

        user = db.session.get(User, int(raw))
        if user is None or not user.is_active:
            logger.warning(
                "Rejected request for unknown or inactive user %s", raw,
                extra={"path": path, "request_id": getattr(g, "request_id", None)},
            )
            return api_error(E.UNAUTHENTICATED, "Unknown or inactive user")

        g.actor = ActorContext.for_user(user)
        return None

    logger.info("Actor context middleware installed")
