from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


# =============================================================================
# ORDER LIFECYCLE STATUS
# =============================================================================

ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
)

# =============================================================================
# ORDER PAYMENT STATUS
# =============================================================================

ORDER_PAYMENT_PENDING = "pending"
ORDER_PAYMENT_PAID = "paid"
ORDER_PAYMENT_FAILED = "failed"
ORDER_PAYMENT_REFUNDED = "refunded"
ORDER_PAYMENT_PARTIALLY_REFUNDED = "partially_refunded"

ORDER_PAYMENT_STATUSES = (
    ORDER_PAYMENT_PENDING,
    ORDER_PAYMENT_PAID,
    ORDER_PAYMENT_FAILED,
    ORDER_PAYMENT_REFUNDED,
    ORDER_PAYMENT_PARTIALLY_REFUNDED,
)

# =============================================================================
# PAYMENT TRANSACTION STATUS
# =============================================================================

TXN_PENDING = "pending"
TXN_COMPLETED = "completed"
TXN_FAILED = "failed"
TXN_CANCELLED = "cancelled"
TXN_REFUNDED = "refunded"

TXN_STATUSES = (TXN_PENDING, TXN_COMPLETED, TXN_FAILED, TXN_CANCELLED, TXN_REFUNDED)


class Order(db.Model):
    """
    Customer order document.

    TOTALS (all in cents):
        total_cents = subtotal_cents + tax_cents + shipping_cents - discount_cents

    Line items are snapshots taken at order time and never follow later
    catalog edits. Status fields are only mutated by the reconciliation
    engine or by an admin status edit.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-facing number (e.g., "ORD-1760781234567-K3J9X0QZP")
    order_number = db.Column(db.String(64), nullable=False, unique=True, index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)
    payment_status = db.Column(db.String(24), nullable=False, default=ORDER_PAYMENT_PENDING, index=True)
    payment_method = db.Column(db.String(32), nullable=True)
    payment_id = db.Column(db.String(255), nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    shipping_address = db.Column(db.JSON, nullable=False)
    billing_address = db.Column(db.JSON, nullable=True)

    tracking_number = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
    )
    transactions = db.relationship(
        "PaymentTransaction",
        backref="order",
        lazy=True,
        order_by="PaymentTransaction.id",
    )

    @staticmethod
    def compute_total(subtotal: int, tax: int, shipping: int, discount: int) -> int:
        return subtotal + tax + shipping - discount

    def totals_consistent(self) -> bool:
        return self.total_cents == self.compute_total(
            self.subtotal_cents, self.tax_cents, self.shipping_cents, self.discount_cents
        )

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}/{self.payment_status}>"

    def to_dict(self, include_items: bool = False, include_transactions: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "shipping_cents": self.shipping_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "total_amount": round(self.total_cents / 100, 2),
            "currency": self.currency,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "tracking_number": self.tracking_number,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "shipped_at": to_utc_z(self.shipped_at) if self.shipped_at else None,
            "delivered_at": to_utc_z(self.delivered_at) if self.delivered_at else None,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        if include_transactions:
            data["transactions"] = [
                txn.to_dict(include_gateway_response=False) for txn in self.transactions
            ]
        return data


class OrderItem(db.Model):
    """
    Snapshot of one ordered product.

    debited_quantity records how many units this line actually removed from
    the inventory ledger. It is 0 until the payment is confirmed and the
    conditional decrement succeeds, and goes back to 0 when credited back on
    cancellation, so a credit never exceeds what was debited.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        db.CheckConstraint("debited_quantity >= 0", name="ck_order_items_debited_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    debited_quantity = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
            "line_total_cents": self.line_total_cents,
            "debited_quantity": self.debited_quantity,
        }


class PaymentTransaction(db.Model):
    """
    One interaction attempt between an order and the payment gateway.

    transaction_id is the gateway's payment-intent id. It is attached right
    after the gateway hands it out; a row without it never reached the
    gateway. At most one transaction per order ever reaches 'completed'.

    gateway_response is an opaque audit snapshot. Business logic never reads
    it after the transition decision has been made.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index("ix_payment_txns_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    transaction_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    payment_method = db.Column(db.String(32), nullable=False, default="stripe")
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=TXN_PENDING, index=True)

    gateway_response = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self, include_gateway_response: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_id": self.order_id,
            "transaction_id": self.transaction_id,
            "payment_method": self.payment_method,
            "amount_cents": self.amount_cents,
            "amount": round(self.amount_cents / 100, 2),
            "currency": self.currency,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_gateway_response:
            data["gateway_response"] = self.gateway_response
        return data
