# Overview: Webhook ingress; verifies gateway events and feeds payment results to reconciliation.

"""
Webhook Ingress

WHY: The gateway retries any delivery we do not acknowledge, for days. So
only two outcomes are errors here:

- SignatureInvalid (400): not from the gateway, nothing processed
- unexpected infrastructure failure (500): worth a redelivery

Everything else is acknowledged with {"received": true}, including events
we ignore on purpose and events we cannot apply (those raise an operator
alert instead).
"""

from __future__ import annotations

from flask import current_app

from ..errors import GatewayProtocolError, OrderBusy, ReconciliationError
from ..extensions import db
from ..models import Order
from ..models.operations import ANOMALY_WEBHOOK_MISSING_ORDER, ANOMALY_WEBHOOK_ORDER_MISMATCH
from . import payment_service
from .alert_service import raise_alert
from .gateway_service import STATUS_FAILED, STATUS_SUCCEEDED, GatewayResult
from .reconciliation_service import SOURCE_WEBHOOK, apply_gateway_result


EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"

# Event type -> status the engine is told to apply.
HANDLED_EVENTS = {
    EVENT_PAYMENT_SUCCEEDED: STATUS_SUCCEEDED,
    EVENT_PAYMENT_FAILED: STATUS_FAILED,
}


def handle_webhook(payload: bytes, signature: str | None, gateway=None) -> dict:
    """
    Verify and apply one gateway event.

    Raises:
        SignatureInvalid: signature header missing or not valid
        OrderBusy: order lock not available; the gateway will redeliver
    """
    gateway = gateway or current_app.extensions["gateway"]

    event = gateway.verify_event(payload, signature)
    event_id = event.get("id")
    event_type = event.get("type")

    applied_status = HANDLED_EVENTS.get(event_type)
    if applied_status is None:
        current_app.logger.info("Ignoring webhook event %s (%s)", event_id, event_type)
        return {"received": True, "handled": False, "event_type": event_type}

    intent = (event.get("data") or {}).get("object")
    try:
        result = GatewayResult.from_payload(intent)
    except GatewayProtocolError as exc:
        current_app.logger.error("Webhook event %s carries no usable payment intent: %s", event_id, exc.message)
        raise_alert(
            ANOMALY_WEBHOOK_MISSING_ORDER,
            f"Webhook event {event_id} ({event_type}) has no usable payment intent",
            details={"event_id": event_id, "error": exc.message},
            commit=True,
        )
        return {"received": True, "handled": False, "event_type": event_type}

    order_id = result.order_id
    if order_id is None:
        raise_alert(
            ANOMALY_WEBHOOK_MISSING_ORDER,
            f"Webhook event {event_id} for {result.intent_id} has no order_id in metadata",
            transaction_id=result.intent_id,
            details={"event_id": event_id, "event_type": event_type, "metadata": result.metadata},
            commit=True,
        )
        return {"received": True, "handled": False, "event_type": event_type}

    txn = payment_service.get_by_intent_id(result.intent_id)
    if txn is not None and txn.order_id != order_id:
        raise_alert(
            ANOMALY_WEBHOOK_ORDER_MISMATCH,
            f"Webhook event {event_id}: intent {result.intent_id} belongs to order "
            f"{txn.order_id} but metadata says {order_id}",
            order_id=txn.order_id,
            transaction_id=result.intent_id,
            details={"event_id": event_id, "metadata_order_id": order_id},
            commit=True,
        )
        return {"received": True, "handled": False, "event_type": event_type}

    if txn is None and db.session.get(Order, order_id) is None:
        raise_alert(
            ANOMALY_WEBHOOK_MISSING_ORDER,
            f"Webhook event {event_id} references unknown order {order_id}",
            transaction_id=result.intent_id,
            details={"event_id": event_id, "metadata_order_id": order_id},
            commit=True,
        )
        return {"received": True, "handled": False, "event_type": event_type}

    # The event type is authoritative for what happened to the payment.
    result = result.with_status(applied_status)
    try:
        outcome = apply_gateway_result(result, source=SOURCE_WEBHOOK, expected_order_id=order_id)
    except ReconciliationError as exc:
        current_app.logger.error(
            "Webhook event %s for %s not applied: %s", event_id, result.intent_id, exc.message
        )
        return {"received": True, "handled": False, "event_type": event_type}
    except OrderBusy:
        current_app.logger.warning(
            "Webhook event %s for order %s deferred: order busy", event_id, order_id
        )
        raise

    current_app.logger.info(
        "Webhook event %s applied to order %s: %s/%s%s",
        event_id, outcome.order_number, outcome.order_status, outcome.payment_status,
        " (duplicate)" if outcome.noop else "",
    )
    return {
        "received": True,
        "handled": True,
        "event_type": event_type,
        "order_number": outcome.order_number,
        "duplicate": outcome.noop,
    }
