# Overview: Operator alerting for consistency anomalies.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import OperationalAnomaly
from ..time_utils import utcnow


def raise_alert(
    kind: str,
    message: str,
    *,
    order_id: int | None = None,
    product_id: int | None = None,
    transaction_id: str | None = None,
    details: dict | None = None,
    commit: bool = False,
) -> OperationalAnomaly:
    """
    Record an anomaly for an operator and log it at ERROR level.

    With commit=False the row joins the caller's unit of work, so it lands
    together with the state change that produced it. Use commit=True from
    failure paths, after the caller's own work has been rolled back.
    """
    current_app.logger.error(
        "ALERT %s: %s (order_id=%s product_id=%s transaction_id=%s)",
        kind, message, order_id, product_id, transaction_id,
    )

    anomaly = OperationalAnomaly(
        kind=kind,
        order_id=order_id,
        product_id=product_id,
        transaction_id=transaction_id,
        message=message,
        details=details or {},
    )
    db.session.add(anomaly)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return anomaly


def list_alerts(*, kind: str | None = None, unresolved_only: bool = True, limit: int = 100) -> list[OperationalAnomaly]:
    query = db.session.query(OperationalAnomaly)
    if kind:
        query = query.filter_by(kind=kind)
    if unresolved_only:
        query = query.filter(OperationalAnomaly.resolved_at.is_(None))
    return query.order_by(OperationalAnomaly.created_at.desc(), OperationalAnomaly.id.desc()).limit(limit).all()


def resolve_alert(anomaly_id: int, note: str | None = None) -> OperationalAnomaly | None:
    anomaly = db.session.get(OperationalAnomaly, anomaly_id)
    if anomaly is None:
        return None
    if anomaly.resolved_at is None:
        anomaly.resolved_at = utcnow()
        anomaly.resolution_note = note
        db.session.commit()
    return anomaly
