# Overview: Order lifecycle state machine; the only code allowed to change Order.status.

"""
Order Lifecycle (authoritative)

================================================================================
STATE MACHINE:
    PENDING -> PROCESSING -> COMPLETED
    PENDING -> COMPLETED
    PENDING | PROCESSING -> CANCELLED

    COMPLETED and CANCELLED are terminal.

INITIAL STATUS:
    IN_PERSON + immediate payment (cash, confirmed transfer)  -> COMPLETED
    IN_PERSON + unconfirmed transfer                          -> PROCESSING
    ONLINE (any payment)                                      -> PENDING

STOCK EFFECT (function of channel and status only):
    IN_PERSON: committed in PROCESSING and COMPLETED (goods leave the counter
               at creation, so stock is deducted immediately)
    ONLINE:    committed only in COMPLETED (creation is a soft availability
               check with no hold; confirmation commits)
    CANCELLED: never committed; cancelling reverses whatever was committed
================================================================================
"""

from __future__ import annotations

from ..errors import InvalidStateTransition
from ..models import Order, StatusChange
from ..validation import PaymentInput


PENDING = "PENDING"
PROCESSING = "PROCESSING"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"

VALID_STATUSES = {PENDING, PROCESSING, COMPLETED, CANCELLED}
TERMINAL_STATUSES = {COMPLETED, CANCELLED}

IN_PERSON = "IN_PERSON"
ONLINE = "ONLINE"

TRANSITIONS = {
    PENDING: {PROCESSING, COMPLETED, CANCELLED},
    PROCESSING: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
}


def initial_status(channel: str, payment: PaymentInput) -> str:
    if channel == IN_PERSON:
        return COMPLETED if payment.is_immediate else PROCESSING
    if channel == ONLINE:
        return PENDING
    raise InvalidStateTransition(f"Unknown order channel {channel!r}")


def stock_committed(channel: str, status: str) -> bool:
    if status == COMPLETED:
        return True
    return channel == IN_PERSON and status == PROCESSING


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in TRANSITIONS.get(from_status, set())


def assert_transition(order: Order, to_status: str) -> None:
    if order.status in TERMINAL_STATUSES:
        raise InvalidStateTransition(
            f"Order {order.invoice_number} is already {order.status}",
            details={"order_id": order.id, "status": order.status, "requested": to_status},
        )
    if not can_transition(order.status, to_status):
        raise InvalidStateTransition(
            f"Cannot move order {order.invoice_number} from {order.status} to {to_status}",
            details={"order_id": order.id, "status": order.status, "requested": to_status},
        )


def start(order: Order, channel: str, payment: PaymentInput) -> str:
    """Set the initial status on a new order."""
    status = initial_status(channel, payment)
    order.channel = channel
    order.status = StatusChange(status)
    return status


def transition(order: Order, to_status: str) -> Order:
    """
    Validated status change. Stock side effects are the caller's job and
    must happen in the same DB transaction.
    """
    if to_status not in VALID_STATUSES:
        raise InvalidStateTransition(f"Unknown order status {to_status!r}")
    assert_transition(order, to_status)
    order.status = StatusChange(to_status)
    return order
