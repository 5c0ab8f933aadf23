"""
GRC Platform
Flask Application Factory.

Usage:
    from grc import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from grc.config import config
from grc.models import db
from grc.middleware.logging_config import configure_logging
from grc.middleware.timing import init_request_timing
from grc.middleware.actor_context import init_actor_context
from grc.middleware.rate_limiter import init_rate_limits

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())
    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware: timing first so every response carries X-Request-ID
    init_request_timing(app)
    init_actor_context(app)
    # Limiter hooks run after the actor is resolved so limits key by user
    limiter.init_app(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from grc.models import auth as _auth_models               # noqa: F401
    from grc.models import versioning as _versioning_models   # noqa: F401
    from grc.models import risk as _risk_models               # noqa: F401
    from grc.models import soa as _soa_models                 # noqa: F401
    from grc.models import exemption as _exemption_models     # noqa: F401
    from grc.models import document as _document_models       # noqa: F401
    from grc.models import audit as _audit_models             # noqa: F401
    from grc.models import notification as _notification_models  # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from grc.blueprints import register_error_handlers
    from grc.blueprints.risk_bp import risk_bp
    from grc.blueprints.soa_bp import soa_bp
    from grc.blueprints.exemption_bp import exemption_bp
    from grc.blueprints.document_bp import document_bp
    from grc.blueprints.audit_bp import audit_bp
    from grc.blueprints.notification_bp import notification_bp
    from grc.blueprints.health_bp import health_bp

    app.register_blueprint(risk_bp)
    app.register_blueprint(soa_bp)
    app.register_blueprint(exemption_bp)
    app.register_blueprint(document_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(health_bp)

    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
