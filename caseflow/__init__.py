"""
caseflow
Flask Application Factory.

Usage:
    from caseflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from caseflow.auth import init_auth
from caseflow.config import config
from caseflow.middleware.jwt_auth import init_jwt_middleware
from caseflow.middleware.logging_config import configure_logging
from caseflow.middleware.rate_limiter import init_rate_limits
from caseflow.middleware.timing import init_request_timing
from caseflow.models import db
from caseflow.utils.errors import register_error_handlers

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
    default_limits=[],                     # no global limit — apply per-blueprint
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
    app.config.from_object(config[config_name]())

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

    # ── Request timing middleware (first hook, so every response is timed)
    init_request_timing(app)

    # ── Content-Type guard ───────────────────────────────────────────────
    init_auth(app)

    # ── JWT auth middleware (sets g.current_user_id / g.current_role) ────
    init_jwt_middleware(app)

    # ── Domain exceptions → JSON error envelope ──────────────────────────
    register_error_handlers(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from caseflow.models import workflow as _workflow_models      # noqa: F401
    from caseflow.models import sla as _sla_models                # noqa: F401
    from caseflow.models import coi as _coi_models                # noqa: F401
    from caseflow.models import audit as _audit_models            # noqa: F401
    from caseflow.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from caseflow.blueprints.admin_bp import admin_bp
    from caseflow.blueprints.coi_bp import coi_bp
    from caseflow.blueprints.health_bp import health_bp
    from caseflow.blueprints.sla_bp import sla_bp
    from caseflow.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(coi_bp)
    app.register_blueprint(sla_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(health_bp)

    init_rate_limits(app, limiter)

    # ── Scheduler ────────────────────────────────────────────────────────
    from caseflow.services import scheduled_jobs as _scheduled_jobs  # noqa: F401
    from caseflow.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflows")
    def seed_workflows_cmd():
        """Seed the default REVIEW / FINDING / CAP workflow definitions."""
        from caseflow.services.seeds import seed_default_workflows
        result = seed_default_workflows()
        logger.info("Seeded workflows: created=%s skipped=%s", result["created"], result["skipped"])

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run a registered scheduled job once (cron entry point)."""
        result = SchedulerService.run_job(job_name)
        logger.info("Job %s finished: %s", job_name, result["status"])
        if result["status"] != "success":
            raise SystemExit(1)

    @app.cli.command("run-due-jobs")
    def run_due_jobs_cmd():
        """Run every scheduled job whose interval has elapsed (single cron entry)."""
        results = SchedulerService.run_due_jobs()
        logger.info("Ran %d due job(s): %s", len(results), [r["job_name"] for r in results])
        if any(r["status"] != "success" for r in results):
            raise SystemExit(1)

    return app
