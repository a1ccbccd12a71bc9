"""
Webhook ingress tests. Payloads are signed exactly as Stripe signs them.
"""

import json

from storefront.extensions import db
from storefront.models import OperationalAnomaly, Order
from storefront.services import inventory_service

from conftest import place_order, post_webhook, sign_payload, webhook_event


def _anomaly_kinds():
    return [a.kind for a in db.session.query(OperationalAnomaly).order_by(OperationalAnomaly.id).all()]


def _order(order_id):
    db.session.expire_all()
    return db.session.get(Order, order_id)


def test_succeeded_event_confirms_order(client, customer, product, gateway):
    created = place_order(customer, [(product, 2)])
    intent = dict(gateway.intents[created["payment_intent_id"]], status="succeeded")

    response = post_webhook(client, webhook_event("payment_intent.succeeded", intent))

    assert response.status_code == 200
    assert response.get_json() == {
        "received": True,
        "handled": True,
        "event_type": "payment_intent.succeeded",
        "order_number": created["order_number"],
        "duplicate": False,
    }
    order = _order(created["order_id"])
    assert (order.status, order.payment_status) == ("confirmed", "paid")
    assert inventory_service.get_stock(product.id) == 3


def test_duplicate_delivery_debits_once(client, customer, product, gateway):
    created = place_order(customer, [(product, 2)])
    intent = dict(gateway.intents[created["payment_intent_id"]], status="succeeded")
    body = webhook_event("payment_intent.succeeded", intent)

    first = post_webhook(client, body)
    second = post_webhook(client, body)

    assert first.get_json()["duplicate"] is False
    assert second.status_code == 200
    assert second.get_json()["duplicate"] is True
    assert inventory_service.get_stock(product.id) == 3


def test_event_type_decides_the_outcome(client, customer, product, gateway):
    created = place_order(customer, [(product, 1)])
    # Snapshot still says requires_payment_method; the event type wins.
    intent = gateway.intents[created["payment_intent_id"]]

    response = post_webhook(client, webhook_event("payment_intent.succeeded", intent))

    assert response.get_json()["handled"] is True
    assert _order(created["order_id"]).payment_status == "paid"


def test_payment_failed_event_cancels_order(client, customer, product, gateway):
    created = place_order(customer, [(product, 1)])
    intent = gateway.intents[created["payment_intent_id"]]

    response = post_webhook(client, webhook_event("payment_intent.payment_failed", intent))

    assert response.status_code == 200
    order = _order(created["order_id"])
    assert (order.status, order.payment_status) == ("cancelled", "failed")
    assert inventory_service.get_stock(product.id) == 5


def test_invalid_signature_is_rejected_without_processing(client, customer, product, gateway):
    created = place_order(customer, [(product, 1)])
    body = webhook_event("payment_intent.succeeded", gateway.intents[created["payment_intent_id"]])

    response = post_webhook(client, body, signature=sign_payload(body, secret="whsec_wrong"))

    assert response.status_code == 400
    assert response.get_json()["code"] == "SignatureInvalid"
    assert _order(created["order_id"]).payment_status == "pending"


def test_missing_signature_is_rejected(client, gateway):
    body = webhook_event("payment_intent.succeeded", {"id": "pi_x", "status": "succeeded"})

    response = post_webhook(client, body, signature=False)

    assert response.status_code == 400


def test_tampered_payload_is_rejected(client, customer, product, gateway):
    created = place_order(customer, [(product, 1)])
    body = webhook_event("payment_intent.payment_failed", gateway.intents[created["payment_intent_id"]])
    signature = sign_payload(body)
    tampered = body.replace("payment_intent.payment_failed", "payment_intent.succeeded")

    response = post_webhook(client, tampered, signature=signature)

    assert response.status_code == 400
    assert _order(created["order_id"]).status == "pending"


def test_stale_signature_is_rejected(client, gateway):
    body = webhook_event("payment_intent.succeeded", {"id": "pi_x", "status": "succeeded"})

    response = post_webhook(client, body, signature=sign_payload(body, timestamp=1_000_000_000))

    assert response.status_code == 400


def test_unhandled_event_type_is_acknowledged(client, db_session, gateway):
    body = json.dumps({"id": "evt_charge", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})

    response = post_webhook(client, body)

    assert response.status_code == 200
    assert response.get_json() == {"received": True, "handled": False, "event_type": "charge.refunded"}
    assert _anomaly_kinds() == []


def test_missing_order_id_is_acknowledged_and_alerted(client, db_session, gateway):
    intent = {"id": "pi_no_meta", "status": "succeeded", "metadata": {}}

    response = post_webhook(client, webhook_event("payment_intent.succeeded", intent))

    assert response.status_code == 200
    assert response.get_json()["handled"] is False
    assert _anomaly_kinds() == ["WEBHOOK_MISSING_ORDER"]


def test_unknown_order_is_acknowledged_and_alerted(client, db_session, gateway):
    intent = {"id": "pi_ghost", "status": "succeeded", "metadata": {"order_id": "98765"}}

    response = post_webhook(client, webhook_event("payment_intent.succeeded", intent))

    assert response.status_code == 200
    assert response.get_json()["handled"] is False
    assert _anomaly_kinds() == ["WEBHOOK_MISSING_ORDER"]


def test_intent_without_status_is_acknowledged_and_alerted(client, db_session, gateway):
    response = post_webhook(client, webhook_event("payment_intent.succeeded", {"metadata": {"order_id": "1"}}))

    assert response.status_code == 200
    assert response.get_json()["handled"] is False
    assert _anomaly_kinds() == ["WEBHOOK_MISSING_ORDER"]


def test_metadata_pointing_at_another_order_is_not_applied(client, customer, product, gateway):
    first = place_order(customer, [(product, 1)])
    second = place_order(customer, [(product, 1)])
    intent = dict(gateway.intents[first["payment_intent_id"]], status="succeeded")
    intent["metadata"] = dict(intent["metadata"], order_id=str(second["order_id"]))

    response = post_webhook(client, webhook_event("payment_intent.succeeded", intent))

    assert response.status_code == 200
    assert response.get_json()["handled"] is False
    assert _anomaly_kinds() == ["WEBHOOK_ORDER_MISMATCH"]
    assert _order(first["order_id"]).payment_status == "pending"
    assert _order(second["order_id"]).payment_status == "pending"
    assert inventory_service.get_stock(product.id) == 5
