"""
Health probes.

    GET /api/v1/health/ready   process is up
    GET /api/v1/health/live    database, stage registry and job registry
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from tourlink.models import db
from tourlink.services import stage_registry
from tourlink.services.scheduler_service import get_registered_jobs

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


def _database_check() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Database check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {
        "database": _database_check(),
        "stages": {
            "status": "ok",
            "active": stage_registry.TOTAL_ACTIVE_STAGES,
            "terminal": sorted(s.value for s in stage_registry.TERMINAL_STAGES),
        },
        "jobs": {"status": "ok", "registered": sorted(get_registered_jobs())},
        "rate_limit_storage": {
            "status": "ok",
            "backend": "redis" if current_app.config.get("REDIS_URL") else "memory",
        },
    }
    healthy = all(c["status"] == "ok" for c in checks.values())
    return jsonify({"status": "healthy" if healthy else "degraded", "checks": checks}), (
        200 if healthy else 503
    )
