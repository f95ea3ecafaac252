"""
Tourlink Marketplace
Flask application factory.

    from tourlink import create_app
    app = create_app()            # APP_ENV, falling back to "development"
    app = create_app("testing")
"""

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
from sqlalchemy.exc import SQLAlchemyError

from tourlink.config import config
from tourlink.middleware.logging_config import configure_logging
from tourlink.middleware.rate_limiter import init_rate_limits
from tourlink.middleware.timing import init_request_timing
from tourlink.models import db

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # limits are applied per blueprint
    storage_uri=os.getenv("REDIS_URL") or "memory://",
)

_SQLITE_FILE_PREFIX = "sqlite:///"


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    # SQLite ignores FOREIGN KEY clauses unless asked per connection
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _ensure_sqlite_dir(uri: str) -> None:
    if uri.startswith(_SQLITE_FILE_PREFIX) and ":memory:" not in uri:
        os.makedirs(os.path.dirname(uri[len(_SQLITE_FILE_PREFIX):]), exist_ok=True)


def _init_extensions(app: Flask) -> None:
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = app.config.get("CORS_ORIGINS", "*")
    if origins and origins != "*":
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])
    else:
        CORS(app)


def _create_tables(app: Flask) -> None:
    from tourlink.models import audit, notification, task, user  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as exc:
            # migrations remain the source of truth; the app still boots
            app.logger.warning("Table bootstrap skipped: %s", exc)


def _register_blueprints(app: Flask) -> None:
    from tourlink.blueprints.health_bp import health_bp
    from tourlink.blueprints.notification_bp import notification_bp
    from tourlink.blueprints.workflow_bp import workflow_bp

    for bp in (health_bp, notification_bp, workflow_bp):
        app.register_blueprint(bp)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description, "code": "ERR_UNSUPPORTED_MEDIA_TYPE"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": "ERR_RATE_LIMITED",
                "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled server error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500


def _register_cli(app: Flask) -> None:
    from tourlink.services.scheduler_service import SchedulerService

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run a registered background job once, e.g. review_auto_approval."""
        run = SchedulerService.run_job(job_name)
        click.echo(f"{job_name}: {run['status']} {run.get('result') or run.get('error') or ''}")

    @app.cli.command("list-jobs")
    def list_jobs_cmd():
        """Show the registered background jobs and their last outcome."""
        for job in SchedulerService.list_jobs():
            last = job["last_run"]["status"] if job["last_run"] else "never run"
            click.echo(f"{job['job_name']:<24} {last:<10} {job['description']}")


def create_app(config_name=None):
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)
    _ensure_sqlite_dir(app.config["SQLALCHEMY_DATABASE_URI"])

    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)

    @app.before_request
    def _require_json_body():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            if request.data and "json" not in (request.content_type or ""):
                abort(415, description="Content-Type must be application/json")

    _create_tables(app)
    _register_blueprints(app)
    _register_error_handlers(app)
    init_rate_limits(app, limiter)

    from tourlink.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)
    _register_cli(app)

    logger.info("Tourlink app created (config=%s)", config_name)
    return app
