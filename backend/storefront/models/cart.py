from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class CartItem(db.Model):
    """One product line in a user's cart. Lines reference live products."""
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        product = self.product
        unit_price = product.price_cents if product else None
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "name": product.name if product else None,
            "sku": product.sku if product else None,
            "unit_price_cents": unit_price,
            "line_total_cents": unit_price * self.quantity if unit_price is not None else None,
            "stock_quantity": product.stock_quantity if product else None,
            "is_active": product.is_active if product else False,
            "updated_at": to_utc_z(self.updated_at),
        }
