# backend/storefront/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_object=None, gateway=None) -> Flask:
    """
    Application factory.

    The store handle, the payment gateway adapter and the per-order lock
    registry are all built here and attached to app.extensions; nothing in
    the order core creates them on first use.
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.concurrency import OrderLockRegistry
    from .services.gateway_service import StripeGateway

    app.extensions["gateway"] = gateway or StripeGateway.from_config(app.config)
    app.extensions["order_locks"] = OrderLockRegistry(
        timeout=float(app.config.get("ORDER_LOCK_TIMEOUT_SECONDS", 15.0))
    )

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.payments import payments_bp
    from .routes.orders import orders_bp
    from .routes.cart import cart_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(cart_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, Stripe-Signature"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    app.logger.info("Storefront app created (gateway=%s)", type(app.extensions["gateway"]).__name__)
    return app
