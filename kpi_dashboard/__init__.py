"""
KPI Dashboard Backend
Flask Application Factory.

Usage:
    from kpi_dashboard import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import json
import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from kpi_dashboard.config import config
from kpi_dashboard.middleware.logging_config import configure_logging
from kpi_dashboard.middleware.rate_limiter import init_rate_limits
from kpi_dashboard.middleware.timing import init_request_timing
from kpi_dashboard.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
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
    default_limits=[],                     # no global limit, applied per route
    storage_uri=os.getenv("REDIS_URL", "memory://"),
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
    app.config.from_object(config[config_name])

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

    # ── Models (register tables on db.metadata) ──────────────────────────
    from kpi_dashboard.models import hierarchy as _hierarchy_models    # noqa: F401
    from kpi_dashboard.models import project as _project_models        # noqa: F401
    from kpi_dashboard.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ───────────────────────
    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from kpi_dashboard.blueprints.health_bp import health_bp
    from kpi_dashboard.blueprints.hierarchy_bp import hierarchy_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(hierarchy_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sync-hierarchy")
    def sync_hierarchy_cmd():
        """Run the organization hierarchy sync once and print the outcome."""
        from kpi_dashboard.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        run = SchedulerService.run_job("hierarchy_sync")
        logger.info("Hierarchy sync finished: %s", run["status"])
        click.echo(json.dumps(run, indent=2, default=str))

    # ── Health check (simple probe - detailed version at /health/live) ───
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "KPI Dashboard Backend"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "detail": str(e)}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("kpi_dashboard.services.scheduled_jobs")  # registers @register_job handlers
    from kpi_dashboard.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    _SchedulerSvc.ensure_jobs_registered()
    if app.config.get("SCHEDULER_ENABLED") and not app.config.get("TESTING"):
        _SchedulerSvc.start()

    return app
