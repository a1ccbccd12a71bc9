# Overview: Flask API routes for checkout, payment confirmation and gateway webhooks.

# backend/storefront/routes/payments.py
"""
Payment API Routes

DESIGN:
- create-payment-intent: Order Assembler (order + pending transaction + intent)
- confirm-payment: synchronous reconciliation after the payment form completes
- webhook: signed gateway events; acknowledged unless the signature is bad
- transaction/<intent_id>: audit view for the order owner or an admin

Every domain failure is a StorefrontError and answers with its own status
code and {"error", "code", "details"} body. Anything else is a logged 500.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import StorefrontError
from ..extensions import db
from ..services import checkout_service, payment_service, reconciliation_service, webhook_service
from ..validation import ConfirmPaymentRequest, CreateOrderRequest


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _error_response(e: StorefrontError):
    db.session.rollback()
    return jsonify(e.to_dict()), e.http_status


# =============================================================================
# CHECKOUT
# =============================================================================

@payments_bp.post("/create-payment-intent")
@require_auth
def create_payment_intent_route():
    """
    Create an order awaiting payment and its Stripe PaymentIntent.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2}],
        "amount": 39.98,
        "currency": "eur",
        "shipping_address": {"line1": "...", "city": "...", "postal_code": "...", "country": "ES"},
        "billing_address": {...},   (optional, defaults to shipping)
        "notes": "..."              (optional)
    }

    Returns:
        200: {client_secret, payment_intent_id, order_id, order_number, amount, amount_cents, currency}
        400: validation, unavailable product, insufficient stock, amount mismatch, card rejected
        502/503: gateway failure (no order is left behind)
    """
    try:
        order_request = CreateOrderRequest.from_json(request.get_json(silent=True))
        result = checkout_service.create_order(
            g.current_user.id,
            order_request,
            current_app.extensions["gateway"],
        )
        return jsonify(result), 200

    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create payment intent")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/confirm-payment")
@require_auth
def confirm_payment_route():
    """
    Request body: {"payment_intent_id": "pi_...", "order_id": 123}

    Returns {message, order_number, payment_status, order_status}.
    Confirming an already-completed payment is a success.
    """
    try:
        confirm_request = ConfirmPaymentRequest.from_json(request.get_json(silent=True))
        result = reconciliation_service.confirm_payment(
            g.current_user,
            confirm_request,
            current_app.extensions["gateway"],
        )
        return jsonify(result), 200

    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to confirm payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# GATEWAY WEBHOOK
# =============================================================================

@payments_bp.post("/webhook")
def webhook_route():
    """
    Stripe webhook endpoint. Authenticated by the Stripe-Signature header only.

    Returns:
        200: {"received": true, ...} for every verified event, applied or not
        400: signature missing or invalid
        409: order busy (gateway retries later)
        500: unexpected failure (gateway retries later)
    """
    try:
        result = webhook_service.handle_webhook(
            request.get_data(),
            request.headers.get("Stripe-Signature"),
            current_app.extensions["gateway"],
        )
        return jsonify(result), 200

    except StorefrontError as e:
        current_app.logger.warning("Webhook rejected: %s", e.message)
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to process webhook")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@payments_bp.get("/methods")
def payment_methods_route():
    config = current_app.config
    return jsonify({
        "payment_methods": [
            {
                "id": "stripe",
                "name": "Card",
                "description": "Credit or debit card via Stripe",
                "enabled": bool(config.get("STRIPE_SECRET_KEY")),
            }
        ],
        "supported_currencies": [c.upper() for c in config.get("SUPPORTED_CURRENCIES", ())],
        "default_currency": config.get("DEFAULT_CURRENCY", "eur").upper(),
        "minimum_amount": float(config.get("MINIMUM_CHARGE_AMOUNT", "0.50")),
    }), 200


@payments_bp.get("/transaction/<string:intent_id>")
@require_auth
def get_transaction_route(intent_id: str):
    try:
        return jsonify({
            "transaction": payment_service.get_transaction_for_actor(intent_id, g.current_user)
        }), 200

    except StorefrontError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get transaction")
        return jsonify({"error": "Internal server error"}), 500
