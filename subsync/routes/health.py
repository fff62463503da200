from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from subsync.extensions import db
from subsync.registry import get_services
from subsync.utils.clock import to_iso, utcnow

health_bp = Blueprint("health", __name__)


@health_bp.route("/api/health", methods=["GET"])
def health():
    """Liveness plus a quick look at the database and payment gateway."""
    checks = {"database": True, "stripe": get_services().gateway.is_ready}
    try:
        db.session.execute(text("SELECT 1"))
    except Exception:
        checks["database"] = False

    return jsonify({
        "status": "ok" if checks["database"] else "degraded",
        "service": current_app.config.get("APP_NAME"),
        "version": current_app.config.get("APP_VERSION"),
        "timestamp": to_iso(utcnow()),
        "checks": checks,
    }), 200 if checks["database"] else 503
