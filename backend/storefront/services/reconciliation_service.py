# Overview: Reconciliation engine; applies gateway payment results and admin status edits to orders.

"""
Reconciliation Engine

WHY: A payment result can arrive through the client's synchronous confirm
call, through one or more webhook deliveries, or both at the same moment.
Whatever the interleaving, the stock debit and the cart clear must happen
exactly once per order.

ORDER OF OPERATIONS (apply_gateway_result):
1. Resolve the transaction by intent id (outside the lock, read only).
   If the intent was never attached locally, fall back to the order id the
   gateway carries in its metadata.
2. Take the per-order lock. Gateway calls never happen past this point.
3. Reload the transaction. Already 'completed' -> idempotent no-op.
4. Unknown gateway status -> ReconciliationError, nothing written.
5. succeeded: claim the transaction with a conditional UPDATE
   (status != 'completed'). Only the single winner of that claim debits
   stock and clears the cart. All writes commit together.
6. processing / failed: adjust order and transaction, no inventory effect.

CONSISTENCY POLICY:
- A refused stock debit (oversold product) is a StockUnderflow anomaly. The
  order still becomes confirmed/paid; the operator gets an alert.
- A second transaction completing an order that already has a completed
  one is a duplicate capture. It is alerted and rejected.
- Any ReconciliationError leaves order and transaction as they were.

ADMIN STATUS EDITS (update_order_status) share the same lock. Cancelling an
order credits back exactly what its items debited, guarded by a conditional
UPDATE on the order's current status so a second cancel credits nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import update

from ..errors import (
    AccessDenied,
    InvalidStatusTransition,
    ReconciliationError,
    StockUnderflow,
    ValidationError,
)
from ..extensions import db
from ..models import Order, PaymentTransaction
from ..models.operations import (
    ANOMALY_DUPLICATE_CAPTURE,
    ANOMALY_RECONCILIATION,
    ANOMALY_STOCK_UNDERFLOW,
)
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_DELIVERED,
    ORDER_PAYMENT_FAILED,
    ORDER_PAYMENT_PAID,
    ORDER_PAYMENT_PENDING,
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_REFUNDED,
    ORDER_SHIPPED,
    TXN_COMPLETED,
    TXN_FAILED,
    TXN_PENDING,
)
from ..time_utils import utcnow
from ..validation import ConfirmPaymentRequest, StatusUpdateRequest
from . import cart_service, inventory_service, order_service, payment_service
from .alert_service import raise_alert
from .concurrency import lock_for_update, order_locks, run_with_retry
from .gateway_service import STATUS_PROCESSING, STATUS_SUCCEEDED, GatewayResult


SOURCE_CONFIRM = "confirm"
SOURCE_WEBHOOK = "webhook"

# Admin-driven order status machine. Same-status edits are always allowed.
ALLOWED_TRANSITIONS = {
    ORDER_PENDING: (ORDER_CONFIRMED, ORDER_CANCELLED, ORDER_REFUNDED),
    ORDER_CONFIRMED: (ORDER_PROCESSING, ORDER_SHIPPED, ORDER_DELIVERED, ORDER_CANCELLED, ORDER_REFUNDED),
    ORDER_PROCESSING: (ORDER_SHIPPED, ORDER_DELIVERED, ORDER_CANCELLED, ORDER_REFUNDED),
    ORDER_SHIPPED: (ORDER_DELIVERED, ORDER_CANCELLED, ORDER_REFUNDED),
    ORDER_DELIVERED: (),
    ORDER_CANCELLED: (),
    ORDER_REFUNDED: (),
}

# Statuses from which a cancellation must not credit stock again.
NO_CREDIT_STATUSES = (ORDER_CANCELLED, ORDER_REFUNDED)

# A late payment success keeps these statuses and only marks the order paid.
FULFILMENT_STATUSES = (ORDER_PROCESSING, ORDER_SHIPPED, ORDER_DELIVERED)


@dataclass
class ReconciliationOutcome:
    order_id: int
    order_number: str
    intent_id: str
    order_status: str
    payment_status: str
    transaction_status: str
    noop: bool = False
    cart_items_cleared: int = 0
    anomalies: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "payment_intent_id": self.intent_id,
            "order_status": self.order_status,
            "payment_status": self.payment_status,
            "transaction_status": self.transaction_status,
            "noop": self.noop,
            "cart_items_cleared": self.cart_items_cleared,
            "anomalies": list(self.anomalies),
        }


# =============================================================================
# GATEWAY RESULTS
# =============================================================================

def apply_gateway_result(
    result: GatewayResult,
    *,
    source: str,
    expected_order_id: int | None = None,
) -> ReconciliationOutcome:
    """
    Apply a gateway-reported payment result to local state exactly once.

    Args:
        result: normalized gateway result for one payment intent
        source: SOURCE_CONFIRM or SOURCE_WEBHOOK, recorded in the snapshot
        expected_order_id: order the caller believes the intent belongs to

    Raises:
        ReconciliationError: unknown status, unresolvable intent, order
            mismatch or duplicate capture (alerted, nothing changed)
        OrderBusy: the order's lock was not free within the wait budget
    """
    # No transaction may be open while waiting on the lock.
    db.session.rollback()
    order_id = _resolve_order_id(result, expected_order_id)
    db.session.rollback()

    with order_locks().hold(order_id):
        return run_with_retry(lambda: _apply_locked(result, order_id, source))


def _resolve_order_id(result: GatewayResult, expected_order_id: int | None) -> int:
    txn = payment_service.get_by_intent_id(result.intent_id)
    if txn is not None:
        if expected_order_id is not None and txn.order_id != expected_order_id:
            raise _escalate(
                ANOMALY_RECONCILIATION,
                f"Payment intent {result.intent_id} belongs to order {txn.order_id}, not {expected_order_id}",
                order_id=expected_order_id,
                intent_id=result.intent_id,
                details={"transaction_order_id": txn.order_id},
            )
        return txn.order_id

    metadata_order_id = result.order_id
    if metadata_order_id is None:
        metadata_order_id = expected_order_id
    elif expected_order_id is not None and metadata_order_id != expected_order_id:
        raise _escalate(
            ANOMALY_RECONCILIATION,
            f"Payment intent {result.intent_id} is tagged for order {metadata_order_id}, not {expected_order_id}",
            order_id=expected_order_id,
            intent_id=result.intent_id,
            details={"metadata_order_id": metadata_order_id},
        )

    if metadata_order_id is None or db.session.get(Order, metadata_order_id) is None:
        raise _escalate(
            ANOMALY_RECONCILIATION,
            f"No local transaction or order for payment intent {result.intent_id}",
            intent_id=result.intent_id,
            details={"metadata": result.metadata},
        )
    return metadata_order_id


def _apply_locked(result: GatewayResult, order_id: int, source: str) -> ReconciliationOutcome:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).one()
    txn = payment_service.get_by_intent_id(result.intent_id)

    if txn is None:
        txn = payment_service.get_unattached_pending(order_id)
        if txn is None:
            raise _escalate(
                ANOMALY_RECONCILIATION,
                f"Order {order.order_number} has no transaction to attach intent {result.intent_id} to",
                order_id=order_id,
                intent_id=result.intent_id,
            )
        payment_service.attach_intent(txn, result.intent_id)
        current_app.logger.warning(
            "Attached intent %s to transaction %s of order %s from gateway metadata",
            result.intent_id, txn.id, order.order_number,
        )
    elif txn.order_id != order_id:
        raise _escalate(
            ANOMALY_RECONCILIATION,
            f"Payment intent {result.intent_id} moved to order {txn.order_id} while waiting",
            order_id=order_id,
            intent_id=result.intent_id,
        )

    if txn.status == TXN_COMPLETED:
        db.session.rollback()
        current_app.logger.info(
            "Duplicate %s for %s on order %s ignored (already completed)",
            source, result.intent_id, order.order_number,
        )
        return _outcome(order_id, result.intent_id, noop=True)

    if result.status is None:
        raise _escalate(
            ANOMALY_RECONCILIATION,
            f"Unrecognised gateway status {result.gateway_status!r} for {result.intent_id}",
            order_id=order_id,
            intent_id=result.intent_id,
            details={"gateway_status": result.gateway_status},
        )

    snapshot = {"source": source, "received_at": utcnow().isoformat(), "payload": result.raw}

    if result.status == STATUS_SUCCEEDED:
        return _apply_success(order, txn, result, snapshot)
    if result.status == STATUS_PROCESSING:
        return _apply_processing(order, txn, result, snapshot)
    return _apply_failure(order, txn, result, snapshot)


def _apply_success(order: Order, txn: PaymentTransaction, result: GatewayResult, snapshot: dict):
    if payment_service.has_other_completed(order.id, txn.id):
        raise _escalate(
            ANOMALY_DUPLICATE_CAPTURE,
            f"Order {order.order_number} already has a completed payment; {result.intent_id} also succeeded",
            order_id=order.id,
            intent_id=result.intent_id,
        )

    if not payment_service.claim_completion(txn.id, snapshot):
        # Lost the claim to a concurrent caller.
        db.session.rollback()
        return _outcome(order.id, result.intent_id, noop=True)

    intent_id = result.intent_id
    anomalies = []
    previous_status = order.status
    if previous_status in NO_CREDIT_STATUSES or previous_status in FULFILMENT_STATUSES:
        anomaly = raise_alert(
            ANOMALY_RECONCILIATION,
            f"Payment {intent_id} succeeded for order {order.order_number} in status {previous_status}",
            order_id=order.id,
            transaction_id=intent_id,
            details={"previous_status": previous_status},
        )
        anomalies.append(_anomaly_summary(anomaly))

    if previous_status not in FULFILMENT_STATUSES:
        order.status = ORDER_CONFIRMED
    order.payment_status = ORDER_PAYMENT_PAID
    order.payment_method = "stripe"
    order.payment_id = intent_id
    order.updated_at = utcnow()

    for item in order.items:
        remaining = item.quantity - item.debited_quantity
        if remaining <= 0:
            continue
        try:
            inventory_service.debit_stock(item.product_id, remaining)
        except StockUnderflow as exc:
            anomaly = raise_alert(
                ANOMALY_STOCK_UNDERFLOW,
                f"Order {order.order_number}: {exc.message}",
                order_id=order.id,
                product_id=item.product_id,
                transaction_id=intent_id,
                details=exc.details,
            )
            anomalies.append(_anomaly_summary(anomaly))
            continue
        item.debited_quantity = item.quantity

    cleared = cart_service.clear_for_user(order.user_id)
    db.session.commit()

    current_app.logger.info(
        "Order %s confirmed/paid via %s (%s); %s cart lines cleared, %s anomalies",
        order.order_number, snapshot["source"], intent_id, cleared, len(anomalies),
    )
    outcome = _outcome(order.id, intent_id)
    outcome.cart_items_cleared = cleared
    outcome.anomalies = anomalies
    return outcome


def _apply_processing(order: Order, txn: PaymentTransaction, result: GatewayResult, snapshot: dict):
    payment_service.set_status(txn.id, TXN_PENDING, snapshot)
    if not payment_service.has_other_completed(order.id, txn.id):
        order.status = ORDER_PENDING
        order.payment_status = ORDER_PAYMENT_PENDING
        order.updated_at = utcnow()
    db.session.commit()

    current_app.logger.info(
        "Order %s payment %s still processing", order.order_number, result.intent_id
    )
    return _outcome(order.id, result.intent_id)


def _apply_failure(order: Order, txn: PaymentTransaction, result: GatewayResult, snapshot: dict):
    payment_service.set_status(txn.id, TXN_FAILED, snapshot)
    if payment_service.has_other_completed(order.id, txn.id):
        current_app.logger.warning(
            "Failed intent %s ignored for order %s: another payment completed",
            result.intent_id, order.order_number,
        )
    else:
        order.status = ORDER_CANCELLED
        order.payment_status = ORDER_PAYMENT_FAILED
        order.updated_at = utcnow()
    db.session.commit()

    current_app.logger.info(
        "Order %s payment %s ended as %s (gateway status %s)",
        order.order_number, result.intent_id, result.status, result.gateway_status,
    )
    return _outcome(order.id, result.intent_id)


def _outcome(order_id: int, intent_id: str, *, noop: bool = False) -> ReconciliationOutcome:
    order = db.session.get(Order, order_id)
    txn = payment_service.get_by_intent_id(intent_id)
    return ReconciliationOutcome(
        order_id=order.id,
        order_number=order.order_number,
        intent_id=intent_id,
        order_status=order.status,
        payment_status=order.payment_status,
        transaction_status=txn.status if txn is not None else TXN_PENDING,
        noop=noop,
    )


def _anomaly_summary(anomaly) -> dict:
    return {
        "id": anomaly.id,
        "kind": anomaly.kind,
        "product_id": anomaly.product_id,
        "message": anomaly.message,
    }


def _escalate(kind, message, *, order_id=None, intent_id=None, details=None) -> ReconciliationError:
    """Discard pending work, record the anomaly, and build the error to raise."""
    db.session.rollback()
    raise_alert(
        kind,
        message,
        order_id=order_id,
        transaction_id=intent_id,
        details=details,
        commit=True,
    )
    error_details = {"intent_id": intent_id} if intent_id else {}
    if order_id is not None:
        error_details["order_id"] = order_id
    return ReconciliationError(message, details=error_details)


# =============================================================================
# SYNCHRONOUS CONFIRMATION
# =============================================================================

def confirm_payment(actor, request: ConfirmPaymentRequest, gateway=None) -> dict:
    """
    Client-driven confirmation after the payment form completes.

    Only the order's owner or an admin may confirm. The gateway is asked for
    the intent's current status before the order lock is taken.
    """
    gateway = gateway or current_app.extensions["gateway"]

    order = order_service.get_order(request.order_id)
    order_service.ensure_can_access(order, actor)

    txn = payment_service.get_by_intent_id(request.payment_intent_id)
    if txn is not None and txn.order_id != order.id:
        raise ValidationError(
            "Payment intent does not belong to this order",
            details={"order_id": order.id, "payment_intent_id": request.payment_intent_id},
        )

    db.session.rollback()
    result = gateway.retrieve_intent(request.payment_intent_id)

    outcome = apply_gateway_result(result, source=SOURCE_CONFIRM, expected_order_id=request.order_id)

    if outcome.noop:
        message = "Payment already confirmed"
    elif outcome.payment_status == ORDER_PAYMENT_PAID:
        message = "Payment confirmed"
    elif outcome.payment_status == ORDER_PAYMENT_PENDING:
        message = "Payment is still processing"
    else:
        message = "Payment was not completed"

    return {
        "message": message,
        "order_number": outcome.order_number,
        "payment_status": outcome.payment_status,
        "order_status": outcome.order_status,
    }


# =============================================================================
# ADMIN STATUS EDITS
# =============================================================================

def update_order_status(order_id: int, request: StatusUpdateRequest, actor) -> dict:
    """
    Admin-driven status change along ALLOWED_TRANSITIONS.

    Raises:
        AccessDenied: caller is not an admin
        NotFoundError: no such order
        InvalidStatusTransition: target not reachable from the current status
    """
    if not actor.is_admin:
        raise AccessDenied("Admin access required")

    order_service.get_order(order_id)
    db.session.rollback()

    with order_locks().hold(order_id):
        response = run_with_retry(lambda: _apply_status_edit(order_id, request))

    current_app.logger.info(
        "Order %s status %s -> %s by admin %s (restocked %s lines)",
        response["order_number"], response["previous_status"], response["new_status"],
        actor.id, len(response["restocked"]),
    )
    return response


def _apply_status_edit(order_id: int, request: StatusUpdateRequest) -> dict:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).one()
    current = order.status
    target = request.status

    if target != current and target not in ALLOWED_TRANSITIONS.get(current, ()):
        db.session.rollback()
        raise InvalidStatusTransition(
            f"Cannot change order status from {current} to {target}",
            details={
                "current_status": current,
                "requested_status": target,
                "allowed_statuses": list(ALLOWED_TRANSITIONS.get(current, ())),
            },
        )

    now = utcnow()
    restocked = []

    if target != current:
        if target == ORDER_CANCELLED:
            restocked = _cancel_and_credit_back(order)
        else:
            order.status = target
        if target == ORDER_SHIPPED and order.shipped_at is None:
            order.shipped_at = now
        if target == ORDER_DELIVERED and order.delivered_at is None:
            order.delivered_at = now

    if request.tracking_number is not None:
        order.tracking_number = request.tracking_number or None
    if request.notes is not None:
        order.notes = request.notes or None
    order.updated_at = now

    db.session.commit()
    return {
        "order_number": order.order_number,
        "previous_status": current,
        "new_status": order.status,
        "tracking_number": order.tracking_number,
        "noop": target == current,
        "restocked": restocked,
    }


def _cancel_and_credit_back(order: Order) -> list[dict]:
    """
    Claim the cancellation with a conditional UPDATE, then return every
    debited unit to stock. Returns the credited lines.
    """
    claimed = db.session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status.notin_(NO_CREDIT_STATUSES))
        .values(status=ORDER_CANCELLED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.expire(order, ["status"])
    if claimed.rowcount != 1:
        return []

    restocked = []
    for item in order.items:
        if item.debited_quantity <= 0:
            continue
        inventory_service.credit_stock(item.product_id, item.debited_quantity)
        restocked.append({"product_id": item.product_id, "quantity": item.debited_quantity})
        item.debited_quantity = 0
    return restocked
