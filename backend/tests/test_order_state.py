"""
Order state machine tests (no database writes).
"""

import pytest

from posledger.errors import InvalidStateTransition
from posledger.models import Order, StatusChange
from posledger.services import order_state
from posledger.services.order_state import (
    CANCELLED,
    COMPLETED,
    IN_PERSON,
    ONLINE,
    PENDING,
    PROCESSING,
)
from posledger.validation import PaymentInput


CASH = PaymentInput(method="CASH", amount_cents=1000)
TRANSFER = PaymentInput(method="TRANSFER")
TRANSFER_CONFIRMED = PaymentInput(method="TRANSFER", transfer_confirmed=True)


def _order(channel, payment):
    order = Order(invoice_number="INV-TEST-0001", payment_method=payment.method)
    order_state.start(order, channel, payment)
    return order


@pytest.mark.parametrize("channel,payment,expected", [
    (IN_PERSON, CASH, COMPLETED),
    (IN_PERSON, TRANSFER_CONFIRMED, COMPLETED),
    (IN_PERSON, TRANSFER, PROCESSING),
    (ONLINE, CASH, PENDING),
    (ONLINE, TRANSFER, PENDING),
    (ONLINE, TRANSFER_CONFIRMED, PENDING),
])
def test_initial_status(channel, payment, expected):
    assert order_state.initial_status(channel, payment) == expected


def test_stock_committed_depends_on_channel_and_status():
    assert order_state.stock_committed(IN_PERSON, COMPLETED)
    assert order_state.stock_committed(IN_PERSON, PROCESSING)
    assert order_state.stock_committed(ONLINE, COMPLETED)
    assert not order_state.stock_committed(ONLINE, PENDING)
    assert not order_state.stock_committed(ONLINE, PROCESSING)
    assert not order_state.stock_committed(IN_PERSON, CANCELLED)


def test_online_order_path():
    order = _order(ONLINE, TRANSFER)
    order_state.transition(order, PROCESSING)
    order_state.transition(order, COMPLETED)
    assert order.status == COMPLETED


@pytest.mark.parametrize("terminal", [COMPLETED, CANCELLED])
@pytest.mark.parametrize("target", [PENDING, PROCESSING, COMPLETED, CANCELLED])
def test_terminal_states_reject_everything(terminal, target):
    order = _order(ONLINE, TRANSFER)
    order_state.transition(order, terminal)
    with pytest.raises(InvalidStateTransition):
        order_state.transition(order, target)
    assert order.status == terminal


def test_processing_cannot_go_back_to_pending():
    order = _order(ONLINE, CASH)
    order_state.transition(order, PROCESSING)
    with pytest.raises(InvalidStateTransition):
        order_state.transition(order, PENDING)


def test_unknown_status_rejected():
    order = _order(ONLINE, CASH)
    with pytest.raises(InvalidStateTransition):
        order_state.transition(order, "SHIPPED")


def test_direct_status_assignment_is_rejected():
    order = _order(ONLINE, CASH)
    with pytest.raises(InvalidStateTransition):
        order.status = COMPLETED
    assert order.status == PENDING

    order.status = StatusChange(PROCESSING)
    assert order.status == PROCESSING
