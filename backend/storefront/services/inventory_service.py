# Overview: Inventory ledger; atomic single-row stock adjustments.

# backend/storefront/services/inventory_service.py

from sqlalchemy import update

from ..errors import InsufficientStock, ProductUnavailable, StockUnderflow, ValidationError
from ..extensions import db
from ..models import Product
"""
Inventory Ledger Invariants (authoritative)

- One stock_quantity per product; it is never negative.
- Every write is a single-row UPDATE evaluated by the database:
    debit:  stock_quantity = stock_quantity - n  WHERE stock_quantity >= n
    credit: stock_quantity = stock_quantity + n
  There is no read-modify-write path, so concurrent debits against the same
  product can never oversell past zero.
- A refused debit is a StockUnderflow. It is surfaced, never clamped.
- Reads at checkout time are advisory only; nothing is reserved until the
  payment is confirmed.
- Functions here never commit. The caller owns the unit of work.
"""


def get_product(product_id: int, *, require_active: bool = True) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise ProductUnavailable(
            f"Product {product_id} does not exist",
            details={"product_id": product_id},
        )
    if require_active and not product.is_active:
        raise ProductUnavailable(
            f"Product {product.name} is no longer available",
            details={"product_id": product_id},
        )
    return product


def get_stock(product_id: int) -> int:
    qty = db.session.query(Product.stock_quantity).filter_by(id=product_id).scalar()
    if qty is None:
        raise ProductUnavailable(
            f"Product {product_id} does not exist",
            details={"product_id": product_id},
        )
    return int(qty)


def check_available(product_id: int, quantity: int) -> Product:
    """
    Advisory stock check (read, not reserved).

    Raises:
        ProductUnavailable: missing or deactivated product
        InsufficientStock: quantity exceeds current stock
    """
    product = get_product(product_id, require_active=True)
    if quantity > product.stock_quantity:
        raise InsufficientStock(
            f"Not enough stock for {product.name}. Available: {product.stock_quantity}",
            details={
                "product_id": product.id,
                "requested_quantity": quantity,
                "stock_quantity": product.stock_quantity,
            },
        )
    return product


def debit_stock(product_id: int, quantity: int) -> None:
    """
    Conditional decrement.

    Raises:
        StockUnderflow: fewer than `quantity` units remain
    """
    if quantity <= 0:
        raise ValidationError("Debit quantity must be positive")

    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        on_hand = db.session.query(Product.stock_quantity).filter_by(id=product_id).scalar()
        raise StockUnderflow(
            f"Cannot debit {quantity} units of product {product_id}: only {on_hand} on hand",
            details={
                "product_id": product_id,
                "requested_quantity": quantity,
                "stock_quantity": on_hand,
            },
        )
    _expire_product(product_id)


def credit_stock(product_id: int, quantity: int) -> None:
    """Single-row increment (credit-back after a cancelled order)."""
    if quantity <= 0:
        raise ValidationError("Credit quantity must be positive")

    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=Product.stock_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ProductUnavailable(
            f"Product {product_id} does not exist",
            details={"product_id": product_id},
        )
    _expire_product(product_id)


def set_stock(product_id: int, quantity: int) -> Product:
    """Absolute stock correction by an operator. Commits."""
    if quantity < 0:
        raise ValidationError("stock_quantity must be >= 0")

    product = get_product(product_id, require_active=False)
    db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=quantity)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    db.session.refresh(product)
    return product


def _expire_product(product_id: int) -> None:
    # Bulk UPDATEs bypass the identity map; drop any cached copy.
    product = db.session.identity_map.get(db.session.identity_key(Product, product_id))
    if product is not None:
        db.session.expire(product, ["stock_quantity"])
