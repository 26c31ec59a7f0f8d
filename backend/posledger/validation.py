from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String, Text

from .errors import InvalidQuantity, ValidationError
from posledger.time_utils import parse_iso_datetime


# Maximum price: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

CHANNELS = ("IN_PERSON", "ONLINE")
PAYMENT_METHODS = ("CASH", "TRANSFER")
ADJUST_DIRECTIONS = ("INCREASE", "DECREASE")


@dataclass(frozen=True)
class InputPolicy:
    """
    Central policy layer for one request body:
    - fields: what clients are allowed to send, with their column-style type
    - required: fields that must be present
    - nullable: fields that may be sent as null
    Anything not in fields is rejected.
    """
    fields: dict[str, Any]
    required: frozenset[str] = frozenset()
    nullable: frozenset[str] = frozenset()


def _coerce_value(key: str, coltype, value: Any):
    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        # Already an int (but not bool which is a subclass of int)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        # String input - must be plain digits (with optional leading minus)
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{key} must be an integer, not a decimal")
        raise ValidationError(f"{key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{key} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{key} must be an ISO-8601 date or datetime")
            if dt is None:
                raise ValidationError(f"{key} must be an ISO-8601 date or datetime")
            return dt
        raise ValidationError(f"{key} must be a datetime")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        if not isinstance(value, (str, int)) or isinstance(value, bool):
            raise ValidationError(f"{key} must be a string")
        return str(value).strip()

    return value


def validate_payload(*, payload: Any, policy: InputPolicy) -> dict:
    """
    Validates + normalizes an incoming JSON object against a policy.

    Returns a cleaned dict containing only the provided, allowed fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    missing = sorted(f for f in policy.required if f not in payload)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    for k in payload.keys():
        if k not in policy.fields:
            raise ValidationError(f"Field not allowed: {k}")

    patch: dict = {}
    for k, raw in payload.items():
        coltype = policy.fields[k]

        if raw is None:
            if k not in policy.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(k, coltype, raw)

        if isinstance(coltype, (String, Text)) and k in policy.required and val == "":
            raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(coltype, String) and coltype.length and isinstance(val, str):
            if len(val) > coltype.length:
                raise ValidationError(f"{k} exceeds max length {coltype.length}")

        patch[k] = val

    return patch


def _blank_to_none(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    return value


def _require_positive_quantity(value: int, key: str = "quantity") -> None:
    if value is None or value <= 0:
        raise InvalidQuantity(f"{key} must be > 0", details={key: value})


def _require_price(value: int, key: str) -> None:
    if value < 0:
        raise ValidationError(f"{key} must be >= 0")
    if value > MAX_PRICE_CENTS:
        raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS}")


def _require_choice(value: str, choices: tuple[str, ...], key: str) -> str:
    value = value.upper()
    if value not in choices:
        raise ValidationError(f"{key} must be one of: {', '.join(choices)}")
    return value


# =============================================================================
# Typed inputs
# =============================================================================

@dataclass(frozen=True)
class StockInInput:
    product_id: int
    quantity: int
    purchase_price_cents: int
    selling_price_cents: int
    batch_code: str | None = None
    expiry_date: datetime | None = None
    notes: str | None = None


@dataclass(frozen=True)
class StockOutInput:
    product_id: int
    quantity: int
    batch_code: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class AdjustInput:
    product_id: int
    quantity: int
    direction: str
    reason: str
    batch_code: str | None = None

    @property
    def delta(self) -> int:
        return self.quantity if self.direction == "INCREASE" else -self.quantity


@dataclass(frozen=True)
class OrderItemInput:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class PaymentInput:
    method: str
    amount_cents: int = 0
    transfer_confirmed: bool = False

    @property
    def is_immediate(self) -> bool:
        return self.method == "CASH" or (self.method == "TRANSFER" and self.transfer_confirmed)


@dataclass(frozen=True)
class CreateOrderInput:
    channel: str
    items: tuple[OrderItemInput, ...]
    payment: PaymentInput
    discount_cents: int = 0
    customer_name: str | None = None
    customer_phone: str | None = None
    notes: str | None = None

    def merged_items(self) -> list[OrderItemInput]:
        """Sum quantities of repeated products, keeping first-seen order."""
        totals: dict[int, int] = {}
        for item in self.items:
            totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
        return [OrderItemInput(product_id=pid, quantity=qty) for pid, qty in totals.items()]


# =============================================================================
# Policies
# =============================================================================

STOCK_IN_POLICY = InputPolicy(
    fields={
        "product_id": Integer(),
        "quantity": Integer(),
        "purchase_price_cents": Integer(),
        "selling_price_cents": Integer(),
        "batch_code": String(100),
        "expiry_date": DateTime(),
        "notes": Text(),
    },
    required=frozenset({"product_id", "quantity", "purchase_price_cents", "selling_price_cents"}),
    nullable=frozenset({"batch_code", "expiry_date", "notes"}),
)

STOCK_OUT_POLICY = InputPolicy(
    fields={
        "product_id": Integer(),
        "quantity": Integer(),
        "batch_code": String(100),
        "notes": Text(),
    },
    required=frozenset({"product_id", "quantity"}),
    nullable=frozenset({"batch_code", "notes"}),
)

ADJUST_POLICY = InputPolicy(
    fields={
        "product_id": Integer(),
        "quantity": Integer(),
        "direction": String(16),
        "batch_code": String(100),
        "notes": Text(),
    },
    required=frozenset({"product_id", "quantity", "direction", "notes"}),
    nullable=frozenset({"batch_code"}),
)

ORDER_POLICY = InputPolicy(
    fields={
        "channel": String(16),
        "items": None,  # validated item by item below
        "payment_method": String(16),
        "payment_amount_cents": Integer(),
        "transfer_confirmed": Boolean(),
        "discount_cents": Integer(),
        "customer_name": String(100),
        "customer_phone": String(20),
        "notes": Text(),
    },
    required=frozenset({"channel", "items", "payment_method"}),
    nullable=frozenset({"customer_name", "customer_phone", "notes"}),
)

ORDER_ITEM_POLICY = InputPolicy(
    fields={"product_id": Integer(), "quantity": Integer()},
    required=frozenset({"product_id", "quantity"}),
)

CANCEL_POLICY = InputPolicy(
    fields={"reason": String(255)},
    required=frozenset({"reason"}),
)


# =============================================================================
# Parsers (payload -> typed input)
# =============================================================================

def parse_stock_in(payload: Any) -> StockInInput:
    patch = validate_payload(payload=payload, policy=STOCK_IN_POLICY)
    _require_positive_quantity(patch["quantity"])
    _require_price(patch["purchase_price_cents"], "purchase_price_cents")
    _require_price(patch["selling_price_cents"], "selling_price_cents")
    return StockInInput(
        product_id=patch["product_id"],
        quantity=patch["quantity"],
        purchase_price_cents=patch["purchase_price_cents"],
        selling_price_cents=patch["selling_price_cents"],
        batch_code=_blank_to_none(patch.get("batch_code")),
        expiry_date=patch.get("expiry_date"),
        notes=_blank_to_none(patch.get("notes")),
    )


def parse_stock_out(payload: Any) -> StockOutInput:
    patch = validate_payload(payload=payload, policy=STOCK_OUT_POLICY)
    _require_positive_quantity(patch["quantity"])
    return StockOutInput(
        product_id=patch["product_id"],
        quantity=patch["quantity"],
        batch_code=_blank_to_none(patch.get("batch_code")),
        notes=_blank_to_none(patch.get("notes")),
    )


def parse_adjust(payload: Any) -> AdjustInput:
    patch = validate_payload(payload=payload, policy=ADJUST_POLICY)
    _require_positive_quantity(patch["quantity"])
    direction = _require_choice(patch["direction"], ADJUST_DIRECTIONS, "direction")
    reason = patch["notes"]
    if not reason:
        raise ValidationError("notes (adjustment reason) cannot be blank")
    return AdjustInput(
        product_id=patch["product_id"],
        quantity=patch["quantity"],
        direction=direction,
        reason=reason,
        batch_code=_blank_to_none(patch.get("batch_code")),
    )


def parse_create_order(payload: Any) -> CreateOrderInput:
    patch = validate_payload(payload=payload, policy=ORDER_POLICY)

    channel = _require_choice(patch["channel"], CHANNELS, "channel")
    method = _require_choice(patch["payment_method"], PAYMENT_METHODS, "payment_method")

    raw_items = patch["items"]
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")

    items = []
    for index, raw_item in enumerate(raw_items):
        try:
            item = validate_payload(payload=raw_item, policy=ORDER_ITEM_POLICY)
        except ValidationError as e:
            raise ValidationError(f"items[{index}]: {e}")
        _require_positive_quantity(item["quantity"], key=f"items[{index}].quantity")
        items.append(OrderItemInput(product_id=item["product_id"], quantity=item["quantity"]))

    amount = patch.get("payment_amount_cents", 0)
    if amount < 0:
        raise ValidationError("payment_amount_cents must be >= 0")
    discount = patch.get("discount_cents", 0)
    if discount < 0:
        raise ValidationError("discount_cents must be >= 0")

    return CreateOrderInput(
        channel=channel,
        items=tuple(items),
        payment=PaymentInput(
            method=method,
            amount_cents=amount,
            transfer_confirmed=patch.get("transfer_confirmed", False),
        ),
        discount_cents=discount,
        customer_name=_blank_to_none(patch.get("customer_name")),
        customer_phone=_blank_to_none(patch.get("customer_phone")),
        notes=_blank_to_none(patch.get("notes")),
    )


def parse_cancel(payload: Any) -> str:
    patch = validate_payload(payload=payload, policy=CANCEL_POLICY)
    if not patch["reason"]:
        raise ValidationError("reason cannot be blank")
    return patch["reason"]
