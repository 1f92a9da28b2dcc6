"""
Compensation cycle service: Flask application factory.

    from compcycle import create_app
    app = create_app()            # APP_ENV, else "development"
    app = create_app("testing")

The factory wires extensions, request middleware, the cycle blueprints and
the job scheduler, and adds two CLI commands: ``flask run-worker`` and
``flask list-jobs``.
"""

import importlib
import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from compcycle.config import config
from compcycle.middleware.logging_config import configure_logging
from compcycle.middleware.rate_limiter import init_rate_limits
from compcycle.middleware.timing import init_request_timing
from compcycle.models import db

logger = logging.getLogger(__name__)

_MODEL_MODULES = ("audit", "auth", "cycle", "employee", "notification", "rules", "scheduling")


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    # Cascades on cycle children rely on FK enforcement
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
# No default limits; init_rate_limits applies them per blueprint
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Build the Flask app.

    Args:
        config_name: "development", "testing" or "production".
                     Falls back to APP_ENV, then "development".
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)

    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)
    _init_request_guards(app)
    _init_schema(app)
    _register_blueprints(app)
    _register_error_pages(app)
    _register_cli(app)
    init_rate_limits(app, limiter)

    # Job handlers register themselves on import
    importlib.import_module("compcycle.services.scheduled_jobs")
    from compcycle.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = [o.strip() for o in app.config.get("CORS_ORIGINS", "*").split(",") if o.strip()]
    if origins and origins != ["*"]:
        CORS(app, origins=origins)
    else:
        CORS(app)


def _init_request_guards(app):
    @app.before_request
    def _require_json_body():
        if request.method not in ("POST", "PUT", "PATCH") or not request.path.startswith("/api/"):
            return None
        if request.data and "json" not in (request.content_type or ""):
            abort(415, description="Content-Type must be application/json")
        return None


def _init_schema(app):
    """Import every model module, then create missing tables."""
    for name in _MODEL_MODULES:
        importlib.import_module(f"compcycle.models.{name}")

    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:
            # Migrations own the schema in deployed environments
            app.logger.warning("create_all skipped: %s", exc)


def _register_blueprints(app):
    from compcycle.blueprints.approval_bp import approval_bp
    from compcycle.blueprints.cycle_bp import cycle_bp
    from compcycle.blueprints.health_bp import health_bp
    from compcycle.blueprints.monitors_bp import monitors_bp

    for bp in (cycle_bp, approval_bp, monitors_bp, health_bp):
        app.register_blueprint(bp)


def _register_error_pages(app):
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled server error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500


def _register_cli(app):
    from compcycle.services.scheduler_service import SchedulerService

    @app.cli.command("run-worker")
    @click.option("--once", is_flag=True, help="Run one pass over due jobs and exit.")
    @click.option("--poll-seconds", type=int, default=None, help="Sleep between passes.")
    def run_worker_cmd(once, poll_seconds):
        """Drain the job queue and run due recurring jobs."""
        SchedulerService.run_worker(once=once, poll_seconds=poll_seconds)

    @app.cli.command("list-jobs")
    def list_jobs_cmd():
        """Show registered jobs and their last run."""
        SchedulerService.ensure_jobs_registered()
        for job in SchedulerService.list_jobs():
            record = job["db_record"] or {}
            click.echo(
                f"{job['job_name']:<22} recurring={job['recurring']!s:<5} "
                f"last_run={record.get('last_run_at')} status={record.get('last_run_status')}"
            )
