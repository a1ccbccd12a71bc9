# Overview: Order assembler; turns a cart checkout request into an order awaiting payment.

"""
Order Assembler

WHY: Creating an order touches three tables and one external system. There
is no transaction spanning the database and the gateway, so the writes are
ordered to make failure cheap:

1. Validate every line against the live catalog (read only, nothing reserved)
2. Price the order from live prices; the client amount is only a cross-check
3. Write Order + OrderItems + a pending PaymentTransaction in ONE commit
4. Ask the gateway for a payment intent tagged with the order's identity
5. Attach the intent id to the transaction

If step 4 fails, the rows from step 3 are deleted again: nothing reached the
gateway, so nothing can ever reconcile against them. If step 5 fails, the
order survives with an unattached pending transaction and the intent's
metadata lets reconciliation find it later.

Inventory is NOT touched here. Stock is debited at payment confirmation.
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import AmountMismatch, GatewayError, OrderNumberCollision, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, PaymentTransaction
from ..models.orders import ORDER_PAYMENT_PENDING, ORDER_PENDING
from ..validation import MAX_LINE_QUANTITY, CreateOrderRequest, OrderLine
from . import inventory_service, payment_service
from .concurrency import run_with_retry


ORDER_NUMBER_ALPHABET = string.digits + string.ascii_uppercase
ORDER_NUMBER_SUFFIX_LENGTH = 9


@dataclass(frozen=True)
class PricedLine:
    product_id: int
    product_name: str
    sku: str
    unit_price_cents: int
    quantity: int

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


def generate_order_number() -> str:
    """ORD-<epoch ms>-<9 random base36 chars>, e.g. ORD-1760781234567-K3J9X0QZP."""
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(ORDER_NUMBER_SUFFIX_LENGTH))
    return f"ORD-{millis}-{suffix}"


def merge_lines(items) -> list[OrderLine]:
    """Collapse repeated product ids into one line, keeping first-seen order."""
    merged: dict[int, int] = {}
    for line in items:
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
        if merged[line.product_id] > MAX_LINE_QUANTITY:
            raise ValidationError(
                f"Product {line.product_id} cannot exceed {MAX_LINE_QUANTITY} units per order",
                details={"product_id": line.product_id},
            )
    return [OrderLine(product_id=pid, quantity=qty) for pid, qty in merged.items()]


def price_lines(items) -> list[PricedLine]:
    """
    Check availability and snapshot live prices.

    Raises:
        ProductUnavailable: missing or deactivated product
        InsufficientStock: quantity above current stock
    """
    priced = []
    for line in merge_lines(items):
        product = inventory_service.check_available(line.product_id, line.quantity)
        priced.append(PricedLine(
            product_id=product.id,
            product_name=product.name,
            sku=product.sku,
            unit_price_cents=product.price_cents,
            quantity=line.quantity,
        ))
    return priced


def create_order(user_id: int, request: CreateOrderRequest, gateway=None) -> dict:
    """
    Create a pending order and its payment intent.

    Returns the client payment handle plus the order identity and the
    server-computed amount.

    Raises:
        ProductUnavailable, InsufficientStock, AmountMismatch: nothing written
        GatewayError: rows were written and removed again
    """
    gateway = gateway or current_app.extensions["gateway"]
    config = current_app.config

    lines = price_lines(request.items)
    subtotal_cents = sum(line.line_total_cents for line in lines)
    total_cents = Order.compute_total(subtotal_cents, 0, 0, 0)

    computed_amount = Decimal(total_cents) / 100
    tolerance = Decimal(str(config.get("AMOUNT_TOLERANCE", "0.01")))
    if abs(computed_amount - request.amount) > tolerance:
        raise AmountMismatch(
            f"Amount {request.amount} does not match the order total {computed_amount}",
            details={
                "client_amount": str(request.amount),
                "computed_amount": str(computed_amount),
            },
        )

    # Release the read snapshot before writing.
    db.session.rollback()

    order_id, txn_id, order_number = _persist_order(user_id, request, lines, subtotal_cents, total_cents)

    metadata = {
        "order_id": str(order_id),
        "order_number": order_number,
        "user_id": str(user_id),
    }
    try:
        handle = gateway.create_intent(
            total_cents,
            request.currency,
            metadata,
            description=f"Order {order_number} - {len(lines)} products",
            idempotency_key=f"order-{order_number}",
        )
    except GatewayError as exc:
        current_app.logger.warning(
            "Gateway refused intent for order %s (%s); discarding order rows",
            order_number, exc.message,
        )
        _discard_order(order_id)
        raise

    def _attach():
        txn = db.session.get(PaymentTransaction, txn_id)
        payment_service.attach_intent(txn, handle.intent_id)
        db.session.commit()

    run_with_retry(_attach)

    current_app.logger.info(
        "Order %s created for user %s: %s %s, intent %s",
        order_number, user_id, computed_amount, request.currency.upper(), handle.intent_id,
    )
    return {
        "client_secret": handle.client_secret,
        "payment_intent_id": handle.intent_id,
        "order_id": order_id,
        "order_number": order_number,
        "amount": float(computed_amount),
        "amount_cents": total_cents,
        "currency": request.currency.upper(),
    }


# =============================================================================
# PERSISTENCE
# =============================================================================

def _persist_order(user_id, request, lines, subtotal_cents, total_cents) -> tuple[int, int, str]:
    attempts = int(current_app.config.get("ORDER_NUMBER_ATTEMPTS", 5))
    for attempt in range(1, attempts + 1):
        order_number = generate_order_number()
        try:
            return run_with_retry(
                lambda: _write_order_rows(user_id, request, lines, subtotal_cents, total_cents, order_number)
            )
        except OrderNumberCollision:
            current_app.logger.warning(
                "Order number %s already taken (attempt %s/%s)", order_number, attempt, attempts
            )
    raise RuntimeError(f"Could not allocate a unique order number after {attempts} attempts")


def _write_order_rows(user_id, request, lines, subtotal_cents, total_cents, order_number):
    """Order + items + pending transaction, committed together or not at all."""
    try:
        order = Order(
            order_number=order_number,
            user_id=user_id,
            status=ORDER_PENDING,
            payment_status=ORDER_PAYMENT_PENDING,
            subtotal_cents=subtotal_cents,
            tax_cents=0,
            shipping_cents=0,
            discount_cents=0,
            total_cents=total_cents,
            currency=request.currency.upper(),
            shipping_address=request.shipping_address,
            billing_address=request.billing_address or request.shipping_address,
            notes=request.notes or None,
        )
        db.session.add(order)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            if _order_number_taken(order_number):
                raise OrderNumberCollision(
                    "Order number already in use",
                    details={"order_number": order_number},
                )
            raise

        for line in lines:
            db.session.add(OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                product_name=line.product_name,
                sku=line.sku,
                unit_price_cents=line.unit_price_cents,
                quantity=line.quantity,
                line_total_cents=line.line_total_cents,
                debited_quantity=0,
            ))

        txn = payment_service.create_pending_transaction(order)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return order.id, txn.id, order_number


def _order_number_taken(order_number: str) -> bool:
    return db.session.query(Order.id).filter_by(order_number=order_number).first() is not None


def _discard_order(order_id: int) -> None:
    """Remove an order that never reached the gateway."""
    db.session.rollback()

    def _delete():
        db.session.query(PaymentTransaction).filter(
            PaymentTransaction.order_id == order_id,
            PaymentTransaction.transaction_id.is_(None),
        ).delete(synchronize_session=False)
        db.session.query(OrderItem).filter_by(order_id=order_id).delete(synchronize_session=False)
        db.session.query(Order).filter_by(id=order_id).delete(synchronize_session=False)
        db.session.commit()

    run_with_retry(_delete)
