# Overview: Flask API routes for the caller's shopping cart.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import StorefrontError
from ..extensions import db
from ..services import cart_service
from ..validation import MAX_LINE_QUANTITY, CartLineRequest, coerce_int


cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


def _error_response(e: StorefrontError):
    db.session.rollback()
    return jsonify(e.to_dict()), e.http_status


@cart_bp.get("")
@require_auth
def get_cart_route():
    try:
        return jsonify(cart_service.get_cart(g.current_user.id)), 200
    except Exception:
        current_app.logger.exception("Failed to load cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.post("/add")
@require_auth
def add_to_cart_route():
    """Request body: {"product_id": 1, "quantity": 2}. Merges into an existing line."""
    try:
        line = CartLineRequest.from_json(request.get_json(silent=True))
        item = cart_service.add_item(g.current_user.id, line)
        return jsonify({"item": item.to_dict()}), 201
    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to add cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.put("/<int:item_id>")
@require_auth
def update_cart_item_route(item_id: int):
    try:
        data = request.get_json(silent=True) or {}
        quantity = coerce_int(data.get("quantity"), "quantity", minimum=1, maximum=MAX_LINE_QUANTITY)
        item = cart_service.update_item(g.current_user.id, item_id, quantity)
        return jsonify({"item": item.to_dict()}), 200
    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/<int:item_id>")
@require_auth
def remove_cart_item_route(item_id: int):
    try:
        cart_service.remove_item(g.current_user.id, item_id)
        return jsonify({"message": "Item removed"}), 200
    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to remove cart item")
        return jsonify({"error": "Internal server error"}), 500
