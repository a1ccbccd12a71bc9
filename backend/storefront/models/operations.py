from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


ANOMALY_STOCK_UNDERFLOW = "STOCK_UNDERFLOW"
ANOMALY_RECONCILIATION = "RECONCILIATION_ERROR"
ANOMALY_DUPLICATE_CAPTURE = "DUPLICATE_CAPTURE"
ANOMALY_WEBHOOK_MISSING_ORDER = "WEBHOOK_MISSING_ORDER"
ANOMALY_WEBHOOK_ORDER_MISMATCH = "WEBHOOK_ORDER_MISMATCH"


class OperationalAnomaly(db.Model):
    """
    Operator alert feed.

    WHY: Consistency problems (oversold stock, gateway results we cannot
    place) are not customer-facing errors. They are recorded here for a
    human to resolve and are never deleted, only marked resolved.
    """
    __tablename__ = "operational_anomalies"
    __table_args__ = (
        db.Index("ix_anomalies_kind_created", "kind", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(64), nullable=False, index=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    transaction_id = db.Column(db.String(255), nullable=True)

    message = db.Column(db.Text, nullable=False)
    details = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_note = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "transaction_id": self.transaction_id,
            "message": self.message,
            "details": self.details,
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "resolution_note": self.resolution_note,
        }
