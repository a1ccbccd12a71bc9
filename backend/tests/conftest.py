"""
Pytest fixtures for storefront backend tests.

Provides the test app (in-memory SQLite, fake Stripe network layer), a clean
database per test, users, products, auth headers and signed webhook helpers.
"""

import copy
import hashlib
import hmac
import itertools
import json
import threading
import time

import pytest

from storefront import create_app
from storefront.config import TestingConfig
from storefront.errors import GatewayRequestRejected
from storefront.extensions import db
from storefront.models import CartItem, Product, User
from storefront.models.auth import ROLE_ADMIN, ROLE_CUSTOMER
from storefront.services import checkout_service, session_service
from storefront.services.auth_service import hash_password
from storefront.services.gateway_service import StripeGateway
from storefront.validation import CreateOrderRequest


TEST_PASSWORD = "Password123"

SHIPPING_ADDRESS = {
    "name": "Ana Garcia",
    "line1": "Calle Mayor 1",
    "city": "Madrid",
    "postal_code": "28013",
    "country": "ES",
}


class FakeGateway(StripeGateway):
    """
    The real adapter with only its two network calls replaced by an
    in-memory intent store. Signature verification stays real.
    """

    def __init__(self):
        super().__init__(
            api_key=TestingConfig.STRIPE_SECRET_KEY,
            webhook_secret=TestingConfig.STRIPE_WEBHOOK_SECRET,
            timeout=TestingConfig.GATEWAY_TIMEOUT_SECONDS,
        )
        self._guard = threading.Lock()
        self.reset()

    def reset(self):
        self.intents = {}
        self.create_calls = []
        self.retrieve_calls = []
        self.fail_create_with = None
        self._ids = itertools.count(1)

    def _call_create(self, params, idempotency_key):
        with self._guard:
            self.create_calls.append({"params": params, "idempotency_key": idempotency_key})
            if self.fail_create_with is not None:
                raise self.fail_create_with
            intent_id = f"pi_test_{next(self._ids):06d}"
            intent = {
                "id": intent_id,
                "object": "payment_intent",
                "amount": params["amount"],
                "currency": params["currency"],
                "status": "requires_payment_method",
                "client_secret": f"{intent_id}_secret_test",
                "metadata": dict(params["metadata"]),
                "description": params.get("description"),
            }
            self.intents[intent_id] = intent
            return copy.deepcopy(intent)

    def _call_retrieve(self, intent_id):
        with self._guard:
            self.retrieve_calls.append(intent_id)
            if intent_id not in self.intents:
                raise GatewayRequestRejected(f"No such payment_intent: '{intent_id}'")
            return copy.deepcopy(self.intents[intent_id])

    def set_intent_status(self, intent_id, status):
        with self._guard:
            self.intents[intent_id]["status"] = status


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig, gateway=FakeGateway())

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app):
    gateway = app.extensions["gateway"]
    gateway.reset()
    return gateway


def make_user(email, role=ROLE_CUSTOMER, first_name="Test", last_name="User"):
    user = User(
        email=email,
        first_name=first_name,
        last_name=last_name,
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def make_product(sku, price_cents=1000, stock=5, is_active=True, name=None):
    product = Product(
        sku=sku,
        name=name or f"Product {sku}",
        price_cents=price_cents,
        stock_quantity=stock,
        is_active=is_active,
    )
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def customer(db_session):
    return make_user("ana@example.com", first_name="Ana", last_name="Garcia")


@pytest.fixture(scope='function')
def other_customer(db_session):
    return make_user("bo@example.com", first_name="Bo", last_name="Jensen")


@pytest.fixture(scope='function')
def admin(db_session):
    return make_user("admin@example.com", role=ROLE_ADMIN, first_name="Site", last_name="Admin")


@pytest.fixture(scope='function')
def product(db_session):
    """Product P: 12.50 each, stock 5."""
    return make_product("TSHIRT-M", price_cents=1250, stock=5, name="T-shirt M")


@pytest.fixture(scope='function')
def second_product(db_session):
    return make_product("MUG-01", price_cents=800, stock=10, name="Mug")


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def headers_for(user) -> dict:
    _, token = session_service.create_session(user.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def customer_headers(customer):
    return headers_for(customer)


@pytest.fixture(scope='function')
def other_customer_headers(other_customer):
    return headers_for(other_customer)


@pytest.fixture(scope='function')
def admin_headers(admin):
    return headers_for(admin)


def add_to_cart(user, product, quantity=1):
    db.session.add(CartItem(user_id=user.id, product_id=product.id, quantity=quantity))
    db.session.commit()


def order_payload(lines, amount, **overrides):
    """lines: [(product, quantity), ...]"""
    payload = {
        "items": [{"product_id": p.id, "quantity": q} for p, q in lines],
        "amount": amount,
        "currency": "eur",
        "shipping_address": dict(SHIPPING_ADDRESS),
    }
    payload.update(overrides)
    return payload


def place_order(user, lines):
    """Create a pending order through the assembler; returns its response dict."""
    amount = sum(p.price_cents * q for p, q in lines) / 100
    request = CreateOrderRequest.from_json(order_payload(lines, amount))
    return checkout_service.create_order(user.id, request)


# =============================================================================
# SIGNED WEBHOOKS
# =============================================================================

def sign_payload(payload: str, secret: str = TestingConfig.STRIPE_WEBHOOK_SECRET, timestamp=None) -> str:
    """Stripe-Signature header value: t=<ts>,v1=<hex hmac-sha256 of '<ts>.<payload>'>."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def webhook_event(event_type: str, intent: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": intent},
    })


def post_webhook(client, body: str, signature=None):
    headers = {"Content-Type": "application/json"}
    if signature is not False:
        headers["Stripe-Signature"] = signature or sign_payload(body)
    return client.post('/api/payments/webhook', data=body, headers=headers)
