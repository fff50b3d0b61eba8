"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — detailed system health (DB, blob store, providers)
"""

import logging
import os
import time

from flask import Blueprint, current_app, jsonify

from courier_onboarding.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Blob storage ─────────────────────────────────────────────────
    blob_root = getattr(current_app.extensions["onboarding"].blob_store, "root", None)
    if blob_root is None:
        checks["blob_store"] = {"status": "skipped", "detail": "non-local store"}
    elif not os.path.exists(blob_root):
        checks["blob_store"] = {"status": "ok", "detail": "created on first upload"}
    elif os.access(blob_root, os.W_OK):
        checks["blob_store"] = {"status": "ok"}
    else:
        checks["blob_store"] = {"status": "error", "detail": f"{blob_root} not writable"}
        overall = False

    # ── Providers ────────────────────────────────────────────────────
    checks["providers"] = {
        "ai_verification": "enabled" if current_app.config.get("AI_VERIFICATION_ENABLED") else "disabled",
    }

    checks["app"] = {
        "name": "Courier Onboarding Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
