"""
Health checks for the load balancer and the orchestrator.

    GET /api/v1/health/ready   200 while the process serves requests
    GET /api/v1/health/live    database round trip plus job queue backlog;
                               503 when the database is unreachable
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func

from compcycle.models import db
from compcycle.models.scheduling import JOB_FAILED, JOB_PENDING, QueuedJob

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


def _database_check() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except Exception as exc:
        db.session.rollback()
        logger.error("Database health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


def _queue_check() -> dict:
    rows = (
        db.session.query(QueuedJob.status, func.count(QueuedJob.id))
        .filter(QueuedJob.status.in_((JOB_PENDING, JOB_FAILED)))
        .group_by(QueuedJob.status)
        .all()
    )
    counts = dict(rows)
    return {"status": "ok", "pending": counts.get(JOB_PENDING, 0), "failed": counts.get(JOB_FAILED, 0)}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {"database": _database_check()}
    up = checks["database"]["status"] == "ok"
    if up:
        checks["job_queue"] = _queue_check()
    checks["app"] = {"debug": current_app.debug, "testing": current_app.testing}

    body = {"status": "healthy" if up else "degraded", "checks": checks}
    return jsonify(body), 200 if up else 503
