"""
Courier Onboarding Engine
Flask Application Factory.

Usage:
    from courier_onboarding import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from courier_onboarding.config import config
from courier_onboarding.middleware.logging_config import configure_logging
from courier_onboarding.middleware.rate_limiter import init_rate_limits
from courier_onboarding.middleware.timing import init_request_timing
from courier_onboarding.models import db
from courier_onboarding.services.engine import init_onboarding
from courier_onboarding.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine  # noqa: E402


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
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None, **engine_overrides):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        engine_overrides: collaborators passed to ``init_onboarding``
                     (kyc, auth, billing, ai, blob_store, notifier, metrics, dispatcher).

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

    # ── Import all models so Alembic can detect them ─────────────────────
    from courier_onboarding.models import onboarding as _onboarding_models        # noqa: F401
    from courier_onboarding.models import document as _document_models            # noqa: F401
    from courier_onboarding.models import status_history as _history_models       # noqa: F401
    from courier_onboarding.models import notification as _notification_models    # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Onboarding engine (orchestrator, document workflow, providers) ───
    init_onboarding(app, **engine_overrides)

    # ── Blueprints ───────────────────────────────────────────────────────
    from courier_onboarding.blueprints.onboarding_bp import onboarding_bp
    from courier_onboarding.blueprints.documents_bp import documents_bp, callbacks_bp
    from courier_onboarding.blueprints.health_bp import health_bp
    from courier_onboarding.blueprints.metrics_bp import metrics_bp

    app.register_blueprint(onboarding_bp)
    app.register_blueprint(documents_bp)
    app.register_blueprint(callbacks_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(metrics_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("courier_onboarding.services.scheduled_jobs")  # registers @register_job handlers
    from courier_onboarding.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one registered job (kyc_status_poll, overdue_document_scan)."""
        outcome = _SchedulerSvc.run_job(job_name)
        logger.info("Job %s finished: %s", job_name, outcome["status"])
        click.echo(outcome)

    return app
