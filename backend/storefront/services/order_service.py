# Overview: Order store queries, admin payment-status edits and dashboard statistics.

"""
Order Store

WHY: Orders are read far more often than they are written. Reads are scoped
to the caller (customers only ever see their own orders); writes that gate
inventory or cart side effects live in reconciliation_service, not here.

The only write here is the admin payment-status correction, which never
touches stock and runs under the same per-order lock as reconciliation so
it cannot interleave with a confirmation in flight.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import case, func, or_

from ..errors import AccessDenied, NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, User
from ..models.orders import ORDER_PAYMENT_PAID
from ..time_utils import end_of_day, utcnow
from ..validation import OrderListQuery, PaymentStatusUpdateRequest
from .concurrency import order_locks, run_with_retry


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def ensure_can_access(order: Order, actor) -> None:
    if not actor.is_admin and order.user_id != actor.id:
        raise AccessDenied("You do not have access to this order")


def get_order_for_actor(order_id: int, actor) -> dict:
    order = get_order(order_id)
    ensure_can_access(order, actor)
    data = order.to_dict(include_items=True, include_transactions=True)
    data["customer"] = _customer_summary(order.user)
    return data


def list_orders(query: OrderListQuery, actor) -> dict:
    """
    Paginated order listing, newest first.

    Admins see every order; customers only their own. Date filters are
    inclusive, a date-only end_date covers the whole day.
    """
    base = db.session.query(Order).join(User, Order.user_id == User.id)

    if not actor.is_admin:
        base = base.filter(Order.user_id == actor.id)
    if query.status:
        base = base.filter(Order.status == query.status)
    if query.payment_status:
        base = base.filter(Order.payment_status == query.payment_status)
    if query.search:
        term = f"%{query.search}%"
        base = base.filter(or_(
            Order.order_number.ilike(term),
            User.email.ilike(term),
            User.first_name.ilike(term),
            User.last_name.ilike(term),
        ))
    if query.start_date:
        base = base.filter(Order.created_at >= query.start_date)
    if query.end_date:
        base = base.filter(Order.created_at <= end_of_day(query.end_date))

    total = base.count()
    orders = (
        base.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((query.page - 1) * query.limit)
        .limit(query.limit)
        .all()
    )

    item_counts = {}
    if orders:
        rows = (
            db.session.query(OrderItem.order_id, func.count(OrderItem.id))
            .filter(OrderItem.order_id.in_([o.id for o in orders]))
            .group_by(OrderItem.order_id)
            .all()
        )
        item_counts = {order_id: count for order_id, count in rows}

    results = []
    for order in orders:
        data = order.to_dict()
        data["item_count"] = item_counts.get(order.id, 0)
        data["customer"] = _customer_summary(order.user)
        results.append(data)

    total_pages = (total + query.limit - 1) // query.limit
    return {
        "orders": results,
        "pagination": {
            "current_page": query.page,
            "total_pages": total_pages,
            "total_items": total,
            "items_per_page": query.limit,
            "has_next": query.page < total_pages,
            "has_prev": query.page > 1,
        },
    }


def update_payment_status(order_id: int, request: PaymentStatusUpdateRequest, actor) -> dict:
    """
    Manual payment-status correction by an admin. No inventory effect.
    """
    if not actor.is_admin:
        raise AccessDenied("Admin access required")

    get_order(order_id)
    db.session.rollback()

    with order_locks().hold(order_id):
        def _apply():
            order = get_order(order_id)
            previous = order.payment_status
            order.payment_status = request.payment_status
            order.updated_at = utcnow()
            db.session.commit()
            return order, previous

        order, previous = run_with_retry(_apply)

    current_app.logger.info(
        "Order %s payment status %s -> %s by user %s",
        order.order_number, previous, order.payment_status, actor.id,
    )
    return {
        "order_number": order.order_number,
        "previous_payment_status": previous,
        "new_payment_status": order.payment_status,
    }


def dashboard_stats(period_days: int = 30) -> dict:
    if period_days < 1 or period_days > 3650:
        raise ValidationError("period must be between 1 and 3650 days")

    now = utcnow()
    since = now - timedelta(days=period_days)
    in_period = Order.created_at >= since
    paid = Order.payment_status == ORDER_PAYMENT_PAID

    total_orders = db.session.query(func.count(Order.id)).scalar() or 0
    period_orders = db.session.query(func.count(Order.id)).filter(in_period).scalar() or 0
    period_revenue_cents = (
        db.session.query(func.coalesce(func.sum(Order.total_cents), 0))
        .filter(in_period, paid)
        .scalar()
        or 0
    )

    by_status = (
        db.session.query(Order.status, func.count(Order.id))
        .filter(in_period)
        .group_by(Order.status)
        .all()
    )
    by_payment_status = (
        db.session.query(Order.payment_status, func.count(Order.id))
        .filter(in_period)
        .group_by(Order.payment_status)
        .all()
    )

    # Last 7 days, bucketed per calendar day (UTC).
    daily: dict[str, dict] = {}
    week_rows = (
        db.session.query(Order.created_at, Order.total_cents, Order.payment_status)
        .filter(Order.created_at >= now - timedelta(days=7))
        .all()
    )
    for created_at, total_cents, payment_status in week_rows:
        day = created_at.date().isoformat()
        bucket = daily.setdefault(day, {"date": day, "orders": 0, "revenue_cents": 0})
        bucket["orders"] += 1
        if payment_status == ORDER_PAYMENT_PAID:
            bucket["revenue_cents"] += total_cents

    spent = func.coalesce(
        func.sum(case((paid, Order.total_cents), else_=0)), 0
    ).label("total_spent_cents")
    order_count = func.count(Order.id).label("order_count")
    top_customers = (
        db.session.query(User.id, User.email, User.first_name, User.last_name, order_count, spent)
        .join(Order, Order.user_id == User.id)
        .filter(in_period)
        .group_by(User.id, User.email, User.first_name, User.last_name)
        .order_by(order_count.desc(), spent.desc())
        .limit(5)
        .all()
    )

    return {
        "summary": {
            "total_orders": int(total_orders),
            "period_orders": int(period_orders),
            "period_revenue_cents": int(period_revenue_cents),
            "period_revenue": round(int(period_revenue_cents) / 100, 2),
            "period_days": period_days,
        },
        "orders_by_status": [{"status": s, "count": c} for s, c in by_status],
        "orders_by_payment_status": [{"payment_status": s, "count": c} for s, c in by_payment_status],
        "daily_stats": sorted(daily.values(), key=lambda d: d["date"], reverse=True),
        "top_customers": [
            {
                "id": row.id,
                "email": row.email,
                "first_name": row.first_name,
                "last_name": row.last_name,
                "order_count": int(row.order_count),
                "total_spent_cents": int(row.total_spent_cents),
            }
            for row in top_customers
        ],
    }


def _customer_summary(user) -> dict | None:
    if user is None:
        return None
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
    }
