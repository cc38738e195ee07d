"""
Health check blueprint.

Endpoints:
    GET /api/v1/health  — liveness with database status
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from kpi_portal.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1")


@health_bp.route("/health", methods=["GET"])
def health():
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(text("SELECT 1"))
        checks["database"] = {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    checks["app"] = {
        "name": "KPI Portal",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }
    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), 200 if overall else 503
