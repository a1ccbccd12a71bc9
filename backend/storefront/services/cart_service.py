# Overview: Shopping cart lines per user; cleared once an order is paid.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..errors import AccessDenied, InsufficientStock, NotFoundError
from ..extensions import db
from ..models import CartItem
from ..validation import MAX_LINE_QUANTITY, CartLineRequest
from . import inventory_service
from .concurrency import run_with_retry


def get_cart(user_id: int) -> dict:
    items = (
        db.session.query(CartItem)
        .filter_by(user_id=user_id)
        .order_by(CartItem.id)
        .all()
    )
    lines = [item.to_dict() for item in items]
    return {
        "items": lines,
        "item_count": sum(line["quantity"] for line in lines),
        "subtotal_cents": sum(line["line_total_cents"] or 0 for line in lines if line["is_active"]),
    }


def add_item(user_id: int, request: CartLineRequest) -> CartItem:
    """
    Add a product to the cart, merging with an existing line.

    The merged quantity is checked against current stock (advisory only).
    """
    def _apply():
        item = db.session.query(CartItem).filter_by(
            user_id=user_id, product_id=request.product_id
        ).first()
        quantity = request.quantity + (item.quantity if item else 0)
        _check_quantity(request.product_id, quantity)

        if item is None:
            item = CartItem(user_id=user_id, product_id=request.product_id, quantity=quantity)
            db.session.add(item)
        else:
            item.quantity = quantity
        db.session.commit()
        return item

    try:
        return run_with_retry(_apply)
    except IntegrityError:
        # A parallel request created the line first; merge into it.
        db.session.rollback()
        return run_with_retry(_apply)


def update_item(user_id: int, item_id: int, quantity: int) -> CartItem:
    item = _get_owned_item(user_id, item_id)
    _check_quantity(item.product_id, quantity)
    item.quantity = quantity
    db.session.commit()
    return item


def remove_item(user_id: int, item_id: int) -> None:
    item = _get_owned_item(user_id, item_id)
    db.session.delete(item)
    db.session.commit()


def clear_for_user(user_id: int) -> int:
    """Delete every cart line of the user. Does not commit."""
    return (
        db.session.query(CartItem)
        .filter_by(user_id=user_id)
        .delete(synchronize_session=False)
    )


def _get_owned_item(user_id: int, item_id: int) -> CartItem:
    item = db.session.get(CartItem, item_id)
    if item is None:
        raise NotFoundError("Cart item not found", details={"item_id": item_id})
    if item.user_id != user_id:
        raise AccessDenied("You do not have access to this cart item")
    return item


def _check_quantity(product_id: int, quantity: int) -> None:
    if quantity > MAX_LINE_QUANTITY:
        raise InsufficientStock(
            f"A cart line cannot exceed {MAX_LINE_QUANTITY} units",
            details={"product_id": product_id, "requested_quantity": quantity},
        )
    inventory_service.check_available(product_id, quantity)
