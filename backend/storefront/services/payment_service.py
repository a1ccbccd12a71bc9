# Overview: Payment transaction store; one row per gateway interaction.

"""
Payment Transaction Store

WHY: Every attempt to collect money for an order is recorded, including the
gateway's raw answer, so support can reconstruct what happened.

DESIGN PRINCIPLES:
- Many transactions per order (retries), at most one ever 'completed'
- Rows are created 'pending' by checkout and mutated only by reconciliation
- Status changes that gate side effects use conditional UPDATEs so the
  database, not the caller's snapshot, decides who wins
- Functions here never commit unless stated; the caller owns the unit of work
"""

from sqlalchemy import update

from ..errors import AccessDenied, NotFoundError
from ..extensions import db
from ..models import Order, PaymentTransaction
from ..models.orders import TXN_COMPLETED, TXN_PENDING
from ..time_utils import utcnow


# =============================================================================
# CREATION
# =============================================================================

def create_pending_transaction(
    order: Order,
    *,
    payment_method: str = "stripe",
) -> PaymentTransaction:
    """Add a pending transaction for the order (flushed, not committed)."""
    txn = PaymentTransaction(
        order_id=order.id,
        transaction_id=None,
        payment_method=payment_method,
        amount_cents=order.total_cents,
        currency=order.currency,
        status=TXN_PENDING,
    )
    db.session.add(txn)
    db.session.flush()
    return txn


def attach_intent(txn: PaymentTransaction, intent_id: str) -> PaymentTransaction:
    """Record the gateway-issued intent id on a transaction that has none."""
    txn.transaction_id = intent_id
    txn.updated_at = utcnow()
    db.session.flush()
    return txn


# =============================================================================
# QUERIES
# =============================================================================

def get_by_intent_id(intent_id: str) -> PaymentTransaction | None:
    return db.session.query(PaymentTransaction).filter_by(transaction_id=intent_id).first()


def get_unattached_pending(order_id: int) -> PaymentTransaction | None:
    """Oldest pending transaction of the order that never got an intent id."""
    return (
        db.session.query(PaymentTransaction)
        .filter_by(order_id=order_id, status=TXN_PENDING, transaction_id=None)
        .order_by(PaymentTransaction.id)
        .first()
    )


def has_other_completed(order_id: int, txn_id: int) -> bool:
    return (
        db.session.query(PaymentTransaction.id)
        .filter(
            PaymentTransaction.order_id == order_id,
            PaymentTransaction.id != txn_id,
            PaymentTransaction.status == TXN_COMPLETED,
        )
        .first()
        is not None
    )


def get_transaction_for_actor(intent_id: str, actor) -> dict:
    """
    Transaction detail with its order number, visible to the order owner or
    an admin only.
    """
    txn = get_by_intent_id(intent_id)
    if txn is None:
        raise NotFoundError("Transaction not found", details={"transaction_id": intent_id})

    order = db.session.get(Order, txn.order_id)
    if not actor.is_admin and order.user_id != actor.id:
        raise AccessDenied("You do not have access to this transaction")

    data = txn.to_dict()
    data["order_number"] = order.order_number
    data["user_id"] = order.user_id
    return data


# =============================================================================
# STATUS TRANSITIONS (reconciliation only)
# =============================================================================

def claim_completion(txn_id: int, gateway_response: dict) -> bool:
    """
    Move a transaction to 'completed' unless it already is.

    Returns True for the single caller that performed the transition. This
    is the database-level arbiter behind the reconciliation idempotency guard.
    """
    result = db.session.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == txn_id, PaymentTransaction.status != TXN_COMPLETED)
        .values(status=TXN_COMPLETED, gateway_response=gateway_response, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    _expire(txn_id)
    return result.rowcount == 1


def set_status(txn_id: int, status: str, gateway_response: dict | None) -> bool:
    """
    Non-completing status change. Never overwrites a completed transaction.
    """
    values = {"status": status, "updated_at": utcnow()}
    if gateway_response is not None:
        values["gateway_response"] = gateway_response
    result = db.session.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == txn_id, PaymentTransaction.status != TXN_COMPLETED)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    _expire(txn_id)
    return result.rowcount == 1


def _expire(txn_id: int) -> None:
    txn = db.session.identity_map.get(db.session.identity_key(PaymentTransaction, txn_id))
    if txn is not None:
        db.session.expire(txn)
