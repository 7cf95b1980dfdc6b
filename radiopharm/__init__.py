"""
Radiopharmaceutical Fulfillment Core
Flask Application Factory.

Usage:
    from radiopharm import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from radiopharm.config import config
from radiopharm.models import db
from radiopharm.middleware.logging_config import configure_logging
from radiopharm.middleware.rate_limiter import init_rate_limits
from radiopharm.middleware.timing import init_request_timing

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
    default_limits=[],                     # no global limit, applied per-blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
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
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length) ────────────────────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from radiopharm.models import approval as _approval_models  # noqa: F401
    from radiopharm.models import audit as _audit_models        # noqa: F401
    from radiopharm.models import auth as _auth_models          # noqa: F401
    from radiopharm.models import batch as _batch_models        # noqa: F401
    from radiopharm.models import capacity as _capacity_models  # noqa: F401
    from radiopharm.models import catalog as _catalog_models    # noqa: F401
    from radiopharm.models import order as _order_models        # noqa: F401

    # ── Auto-create tables outside production (migrations own prod schema) ─
    if config_name != "production":
        with app.app_context():
            if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") \
                    and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
                os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()
            app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from radiopharm.blueprints.approval_bp import approval_bp
    from radiopharm.blueprints.batch_bp import batch_bp
    from radiopharm.blueprints.capacity_bp import capacity_bp
    from radiopharm.blueprints.catalog_bp import catalog_bp
    from radiopharm.blueprints.health_bp import health_bp
    from radiopharm.blueprints.order_bp import order_bp
    from radiopharm.blueprints.planning_bp import planning_bp
    from radiopharm.blueprints.transition_bp import transition_bp

    app.register_blueprint(planning_bp)
    app.register_blueprint(catalog_bp)
    app.register_blueprint(order_bp)
    app.register_blueprint(batch_bp)
    app.register_blueprint(capacity_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(transition_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("assign-role")
    @click.argument("actor")
    @click.argument("role")
    def assign_role_cmd(actor, role):
        """Map ACTOR to ROLE (bootstraps the first ADMIN)."""
        from radiopharm.services.role_resolver import set_role
        row = set_role(actor, role)
        logger.info("Assigned role %s to %s.", row.role, row.actor)
        click.echo(f"{row.actor} -> {row.role}")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
