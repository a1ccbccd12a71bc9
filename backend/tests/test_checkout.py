"""
Order assembler tests: pricing, validation, atomic order rows and the
gateway compensation path.
"""

import re

import pytest

from storefront.errors import GatewayRequestRejected, GatewayTransportError
from storefront.extensions import db
from storefront.models import Order, OrderItem, PaymentTransaction
from storefront.services import checkout_service, inventory_service
from storefront.validation import CreateOrderRequest

from conftest import make_product, order_payload


def _order_count():
    return db.session.query(Order).count()


def _create(client, headers, payload):
    return client.post('/api/payments/create-payment-intent', json=payload, headers=headers)


def test_create_order_writes_order_items_and_attached_transaction(client, customer, customer_headers, product, gateway):
    response = _create(client, customer_headers, order_payload([(product, 2)], 25.00))

    assert response.status_code == 200
    body = response.get_json()
    assert body["amount"] == 25.0
    assert body["amount_cents"] == 2500
    assert body["currency"] == "EUR"
    assert body["client_secret"].startswith(body["payment_intent_id"])
    assert re.fullmatch(r"ORD-\d{13}-[0-9A-Z]{9}", body["order_number"])

    order = db.session.get(Order, body["order_id"])
    assert order.user_id == customer.id
    assert (order.status, order.payment_status) == ("pending", "pending")
    assert order.subtotal_cents == 2500
    assert order.total_cents == 2500
    assert order.totals_consistent()
    assert order.billing_address == order.shipping_address

    assert len(order.items) == 1
    item = order.items[0]
    assert (item.unit_price_cents, item.quantity, item.line_total_cents) == (1250, 2, 2500)
    assert item.debited_quantity == 0

    txns = db.session.query(PaymentTransaction).filter_by(order_id=order.id).all()
    assert len(txns) == 1
    assert txns[0].transaction_id == body["payment_intent_id"]
    assert txns[0].status == "pending"
    assert txns[0].amount_cents == 2500

    # Nothing is reserved before payment.
    assert inventory_service.get_stock(product.id) == 5


def test_intent_carries_order_identity_and_idempotency_key(client, customer, customer_headers, product, gateway):
    body = _create(client, customer_headers, order_payload([(product, 1)], 12.50)).get_json()

    call = gateway.create_calls[0]
    assert call["idempotency_key"] == f"order-{body['order_number']}"
    assert call["params"]["amount"] == 1250
    assert call["params"]["currency"] == "eur"
    assert call["params"]["metadata"] == {
        "order_id": str(body["order_id"]),
        "order_number": body["order_number"],
        "user_id": str(customer.id),
    }


def test_repeated_product_lines_are_merged(client, customer_headers, product, second_product, gateway):
    payload = order_payload([(product, 1), (second_product, 2), (product, 1)], 41.00)
    response = _create(client, customer_headers, payload)

    assert response.status_code == 200
    order = db.session.get(Order, response.get_json()["order_id"])
    quantities = {item.product_id: item.quantity for item in order.items}
    assert quantities == {product.id: 2, second_product.id: 2}


def test_amount_within_tolerance_is_accepted(client, customer_headers, product, gateway):
    response = _create(client, customer_headers, order_payload([(product, 2)], 25.01))

    assert response.status_code == 200
    assert response.get_json()["amount"] == 25.0


def test_amount_mismatch_writes_nothing(client, customer_headers, product, gateway):
    response = _create(client, customer_headers, order_payload([(product, 2)], 20.00))

    assert response.status_code == 400
    body = response.get_json()
    assert body["code"] == "AmountMismatch"
    assert body["details"]["computed_amount"] == "25"
    assert _order_count() == 0
    assert gateway.create_calls == []


def test_insufficient_stock_is_rejected(client, customer_headers, product, gateway):
    response = _create(client, customer_headers, order_payload([(product, 6)], 75.00))

    assert response.status_code == 400
    assert response.get_json()["code"] == "InsufficientStock"
    assert _order_count() == 0


def test_merged_lines_cannot_exceed_the_per_line_cap(client, customer_headers, product, gateway):
    payload = order_payload([(product, 600), (product, 600)], 15000.00)

    response = _create(client, customer_headers, payload)

    assert response.status_code == 400
    assert response.get_json()["code"] == "ValidationError"
    assert "cannot exceed 1000 units" in response.get_json()["error"]
    assert _order_count() == 0
    assert gateway.create_calls == []


def test_unavailable_product_is_rejected(client, customer_headers, db_session, gateway):
    retired = make_product("RETIRED", price_cents=500, stock=3, is_active=False)

    response = _create(client, customer_headers, order_payload([(retired, 1)], 5.00))

    assert response.status_code == 400
    assert response.get_json()["code"] == "ProductUnavailable"
    assert _order_count() == 0


@pytest.mark.parametrize("overrides, message", [
    ({"items": []}, "items"),
    ({"items": [{"product_id": 1, "quantity": 0}]}, "quantity"),
    ({"items": [{"product_id": 1, "quantity": 1.5}]}, "quantity"),
    ({"amount": 0.49}, "at least"),
    ({"amount": "abc"}, "number"),
    ({"currency": "jpy"}, "Unsupported currency"),
    ({"shipping_address": None}, "shipping_address"),
])
def test_invalid_payloads_are_rejected_before_any_write(client, customer_headers, product, gateway, overrides, message):
    payload = order_payload([(product, 1)], 12.50)
    payload.update(overrides)

    response = _create(client, customer_headers, payload)

    assert response.status_code == 400
    assert message in response.get_json()["error"]
    assert _order_count() == 0


def test_order_items_alias_is_accepted(client, customer_headers, product, gateway):
    payload = order_payload([(product, 1)], 12.50)
    payload["order_items"] = payload.pop("items")

    assert _create(client, customer_headers, payload).status_code == 200


def test_requires_authentication(client, product, gateway):
    response = _create(client, {}, order_payload([(product, 1)], 12.50))

    assert response.status_code == 401


@pytest.mark.parametrize("error, status", [
    (GatewayTransportError("Payment gateway unreachable"), 503),
    (GatewayRequestRejected("Your card was declined"), 400),
])
def test_gateway_failure_leaves_no_order_behind(client, customer_headers, product, gateway, error, status):
    gateway.fail_create_with = error

    response = _create(client, customer_headers, order_payload([(product, 2)], 25.00))

    assert response.status_code == status
    assert _order_count() == 0
    assert db.session.query(OrderItem).count() == 0
    assert db.session.query(PaymentTransaction).count() == 0
    assert inventory_service.get_stock(product.id) == 5


def test_order_number_collision_is_retried(app, customer, product, gateway, monkeypatch):
    numbers = iter(["ORD-1760000000000-AAAAAAAAA", "ORD-1760000000000-AAAAAAAAA", "ORD-1760000000001-BBBBBBBBB"])
    monkeypatch.setattr(checkout_service, "generate_order_number", lambda: next(numbers))

    request = CreateOrderRequest.from_json(order_payload([(product, 1)], 12.50))
    first = checkout_service.create_order(customer.id, request)
    second = checkout_service.create_order(customer.id, request)

    assert first["order_number"] == "ORD-1760000000000-AAAAAAAAA"
    assert second["order_number"] == "ORD-1760000000001-BBBBBBBBB"
    assert _order_count() == 2


def test_order_number_exhaustion_fails_without_rows(app, customer, product, gateway, monkeypatch):
    monkeypatch.setattr(checkout_service, "generate_order_number", lambda: "ORD-1760000000000-SAMESAMES")

    request = CreateOrderRequest.from_json(order_payload([(product, 1)], 12.50))
    checkout_service.create_order(customer.id, request)

    with pytest.raises(RuntimeError):
        checkout_service.create_order(customer.id, request)
    assert _order_count() == 1
    assert len(gateway.create_calls) == 1


def test_generated_order_numbers_are_distinct():
    numbers = {checkout_service.generate_order_number() for _ in range(200)}

    assert len(numbers) == 200
