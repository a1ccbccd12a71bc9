# backend/storefront/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///storefront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Payment gateway (Stripe)
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))

    # Outbound gateway timeout. Kept well below the per-order lock timeout
    # so a slow gateway can never pin an order.
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))
    ORDER_LOCK_TIMEOUT_SECONDS = float(os.environ.get("ORDER_LOCK_TIMEOUT_SECONDS", "15"))

    # Checkout rules
    DEFAULT_CURRENCY = "eur"
    SUPPORTED_CURRENCIES = ("eur", "usd", "gbp")
    MINIMUM_CHARGE_AMOUNT = "0.50"
    AMOUNT_TOLERANCE = "0.01"
    ORDER_NUMBER_ATTEMPTS = 5

    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_storefront"
    STRIPE_WEBHOOK_SECRET = "whsec_storefront_test"
    GATEWAY_TIMEOUT_SECONDS = 2.0
    ORDER_LOCK_TIMEOUT_SECONDS = 5.0
    BCRYPT_ROUNDS = 4
    LOG_LEVEL = "DEBUG"
