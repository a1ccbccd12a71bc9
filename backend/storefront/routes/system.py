# backend/storefront/routes/system.py
"""
System health and operator endpoints.

/health checks the database and reports the in-process lock registry.
/api/anomalies is the operator alert feed (admin only).
"""

import time

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import text

from ..decorators import require_admin, require_auth
from ..errors import StorefrontError
from ..extensions import db
from ..services import alert_service
from ..time_utils import utcnow
from ..validation import coerce_int

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: database reachable
    - 503: database unreachable
    """
    database_health = check_database_health()
    healthy = database_health["status"] == "healthy"

    response = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {
            "database": database_health,
            "order_locks": {"active": current_app.extensions["order_locks"].active_count()},
            "payment_gateway": {
                "configured": bool(current_app.config.get("STRIPE_SECRET_KEY")),
            },
        },
    }
    return response, 200 if healthy else 503


@system_bp.get("/api/anomalies")
@require_auth
@require_admin
def list_anomalies_route():
    """
    Query params:
    - kind: filter by anomaly kind
    - include_resolved: "true" to include resolved anomalies
    - limit: max rows (default 100, max 500)
    """
    try:
        anomalies = alert_service.list_alerts(
            kind=request.args.get("kind") or None,
            unresolved_only=request.args.get("include_resolved", "false").lower() != "true",
            limit=coerce_int(request.args.get("limit", 100), "limit", minimum=1, maximum=500),
        )
        return jsonify({
            "anomalies": [a.to_dict() for a in anomalies],
            "count": len(anomalies),
        }), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list anomalies")
        return jsonify({"error": "Internal server error"}), 500
