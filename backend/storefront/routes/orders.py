# Overview: Flask API routes for order listing, detail and admin status edits.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..errors import StorefrontError
from ..extensions import db
from ..services import order_service, reconciliation_service
from ..validation import (
    OrderListQuery,
    PaymentStatusUpdateRequest,
    StatusUpdateRequest,
    coerce_int,
)


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _error_response(e: StorefrontError):
    db.session.rollback()
    return jsonify(e.to_dict()), e.http_status


@orders_bp.get("")
@require_auth
def list_orders_route():
    """
    Paginated orders, newest first. Customers only see their own.

    Query params: page, limit (1-100), status, payment_status, search,
    start_date, end_date (ISO-8601, inclusive)
    """
    try:
        query = OrderListQuery.from_args(request.args)
        return jsonify(order_service.list_orders(query, g.current_user)), 200
    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/stats/dashboard")
@require_auth
@require_admin
def dashboard_stats_route():
    try:
        period = coerce_int(request.args.get("period", 30), "period", minimum=1)
        return jsonify(order_service.dashboard_stats(period)), 200
    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to compute order statistics")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        return jsonify({"order": order_service.get_order_for_actor(order_id, g.current_user)}), 200
    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/status")
@require_auth
@require_admin
def update_order_status_route(order_id: int):
    """
    Admin status edit.

    Request body: {"status": "shipped", "tracking_number": "...", "notes": "..."}

    Returns:
        200: {order_number, previous_status, new_status, tracking_number, noop, restocked}
        409: transition not allowed from the current status
    """
    try:
        status_request = StatusUpdateRequest.from_json(request.get_json(silent=True))
        result = reconciliation_service.update_order_status(order_id, status_request, g.current_user)
        return jsonify(result), 200
    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/payment-status")
@require_auth
@require_admin
def update_payment_status_route(order_id: int):
    try:
        payment_request = PaymentStatusUpdateRequest.from_json(request.get_json(silent=True))
        result = order_service.update_payment_status(order_id, payment_request, g.current_user)
        return jsonify(result), 200
    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update payment status")
        return jsonify({"error": "Internal server error"}), 500
