from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from flask import current_app

from .errors import ValidationError
from .models.orders import ORDER_PAYMENT_STATUSES, ORDER_STATUSES
from .time_utils import parse_iso_date


MAX_LINE_QUANTITY = 1000
MAX_ORDER_LINES = 100
MAX_NOTES_LENGTH = 1000
MAX_TRACKING_LENGTH = 100
MAX_ADDRESS_FIELD_LENGTH = 255


# =============================================================================
# FIELD COERCION
# =============================================================================

def _require_object(payload: Any) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def coerce_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer parsing; rejects floats, booleans and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return result


def coerce_amount(value: Any, field: str = "amount") -> Decimal:
    """Monetary amount in currency units (e.g. 19.99). Never a float internally."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    if not isinstance(value, (int, float, str)):
        raise ValidationError(f"{field} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return amount


def coerce_text(value: Any, field: str, *, max_length: int, allow_blank: bool = True) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    text = value.strip()
    if not text and not allow_blank:
        raise ValidationError(f"{field} cannot be blank")
    if len(text) > max_length:
        raise ValidationError(f"{field} cannot exceed {max_length} characters")
    return text


def coerce_address(value: Any, field: str, *, required: bool) -> dict | None:
    """
    Structured address: a non-empty object of scalar fields.
    """
    if value is None:
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if not isinstance(value, dict) or not value:
        raise ValidationError(f"{field} must be a non-empty object")

    address: dict = {}
    for key, raw in value.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError(f"{field} has an invalid field name")
        if raw is None:
            address[key] = None
        elif isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
            raise ValidationError(f"{field}.{key} must be a string")
        else:
            text = str(raw).strip()
            if len(text) > MAX_ADDRESS_FIELD_LENGTH:
                raise ValidationError(f"{field}.{key} exceeds max length {MAX_ADDRESS_FIELD_LENGTH}")
            address[key] = text
    return address


# =============================================================================
# REQUEST CONTRACTS
# =============================================================================

@dataclass(frozen=True)
class OrderLine:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class CreateOrderRequest:
    items: tuple[OrderLine, ...]
    amount: Decimal
    currency: str
    shipping_address: dict
    billing_address: dict | None
    notes: str | None

    @classmethod
    def from_json(cls, payload: Any) -> "CreateOrderRequest":
        payload = _require_object(payload)
        config = current_app.config

        raw_items = payload.get("items", payload.get("order_items"))
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("items must be a non-empty list")
        if len(raw_items) > MAX_ORDER_LINES:
            raise ValidationError(f"An order cannot have more than {MAX_ORDER_LINES} lines")

        items = []
        for i, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                raise ValidationError(f"items[{i}] must be an object")
            if "product_id" not in raw or "quantity" not in raw:
                raise ValidationError(f"items[{i}] requires product_id and quantity")
            items.append(OrderLine(
                product_id=coerce_int(raw["product_id"], f"items[{i}].product_id", minimum=1),
                quantity=coerce_int(
                    raw["quantity"], f"items[{i}].quantity", minimum=1, maximum=MAX_LINE_QUANTITY
                ),
            ))

        if "amount" not in payload:
            raise ValidationError("amount is required")
        amount = coerce_amount(payload["amount"])
        minimum = Decimal(str(config.get("MINIMUM_CHARGE_AMOUNT", "0.50")))
        if amount < minimum:
            raise ValidationError(f"amount must be at least {minimum}")

        currency = payload.get("currency") or config.get("DEFAULT_CURRENCY", "eur")
        if not isinstance(currency, str):
            raise ValidationError("currency must be a string")
        currency = currency.strip().lower()
        supported = tuple(config.get("SUPPORTED_CURRENCIES", ("eur", "usd", "gbp")))
        if currency not in supported:
            raise ValidationError(
                f"Unsupported currency: {currency}",
                details={"supported_currencies": list(supported)},
            )

        return cls(
            items=tuple(items),
            amount=amount,
            currency=currency,
            shipping_address=coerce_address(payload.get("shipping_address"), "shipping_address", required=True),
            billing_address=coerce_address(payload.get("billing_address"), "billing_address", required=False),
            notes=coerce_text(payload.get("notes"), "notes", max_length=MAX_NOTES_LENGTH),
        )


@dataclass(frozen=True)
class ConfirmPaymentRequest:
    payment_intent_id: str
    order_id: int

    @classmethod
    def from_json(cls, payload: Any) -> "ConfirmPaymentRequest":
        payload = _require_object(payload)
        intent_id = payload.get("payment_intent_id", payload.get("payment_handle_id"))
        intent_id = coerce_text(intent_id, "payment_intent_id", max_length=255, allow_blank=False)
        if intent_id is None:
            raise ValidationError("payment_intent_id is required")
        if "order_id" not in payload:
            raise ValidationError("order_id is required")
        return cls(
            payment_intent_id=intent_id,
            order_id=coerce_int(payload["order_id"], "order_id", minimum=1),
        )


@dataclass(frozen=True)
class StatusUpdateRequest:
    """None means "not provided"; an empty string clears the field."""
    status: str
    tracking_number: str | None = None
    notes: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> "StatusUpdateRequest":
        payload = _require_object(payload)
        status = payload.get("status")
        if status not in ORDER_STATUSES:
            raise ValidationError(
                "Invalid order status",
                details={"valid_statuses": list(ORDER_STATUSES)},
            )
        return cls(
            status=status,
            tracking_number=coerce_text(
                payload.get("tracking_number"), "tracking_number", max_length=MAX_TRACKING_LENGTH
            ),
            notes=coerce_text(payload.get("notes"), "notes", max_length=MAX_NOTES_LENGTH),
        )


@dataclass(frozen=True)
class PaymentStatusUpdateRequest:
    payment_status: str

    @classmethod
    def from_json(cls, payload: Any) -> "PaymentStatusUpdateRequest":
        payload = _require_object(payload)
        payment_status = payload.get("payment_status")
        if payment_status not in ORDER_PAYMENT_STATUSES:
            raise ValidationError(
                "Invalid payment status",
                details={"valid_payment_statuses": list(ORDER_PAYMENT_STATUSES)},
            )
        return cls(payment_status=payment_status)


@dataclass(frozen=True)
class CartLineRequest:
    product_id: int
    quantity: int

    @classmethod
    def from_json(cls, payload: Any) -> "CartLineRequest":
        payload = _require_object(payload)
        if "product_id" not in payload:
            raise ValidationError("product_id is required")
        return cls(
            product_id=coerce_int(payload["product_id"], "product_id", minimum=1),
            quantity=coerce_int(payload.get("quantity", 1), "quantity", minimum=1, maximum=MAX_LINE_QUANTITY),
        )


@dataclass(frozen=True)
class OrderListQuery:
    page: int = 1
    limit: int = 10
    status: str | None = None
    payment_status: str | None = None
    search: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    @classmethod
    def from_args(cls, args) -> "OrderListQuery":
        status = args.get("status") or None
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationError("Invalid status filter")
        payment_status = args.get("payment_status") or None
        if payment_status is not None and payment_status not in ORDER_PAYMENT_STATUSES:
            raise ValidationError("Invalid payment_status filter")

        try:
            start_date = parse_iso_date(args.get("start_date"))
            end_date = parse_iso_date(args.get("end_date"))
        except ValueError:
            raise ValidationError("start_date and end_date must be ISO-8601 dates")

        return cls(
            page=coerce_int(args.get("page", 1), "page", minimum=1),
            limit=coerce_int(args.get("limit", 10), "limit", minimum=1, maximum=100),
            status=status,
            payment_status=payment_status,
            search=coerce_text(args.get("search"), "search", max_length=100) or None,
            start_date=start_date,
            end_date=end_date,
        )
