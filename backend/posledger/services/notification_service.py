# Overview: Fire-and-forget customer notifications; delivery belongs to an external collaborator.

from __future__ import annotations

from typing import Callable

from flask import current_app

from ..config import OrderSettings
from ..models import Order
from posledger.time_utils import to_utc_z

Dispatcher = Callable[[str, str], None]

_EXTENSION_KEY = "posledger.notification_dispatcher"


def _log_dispatcher(recipient: str, message: str) -> None:
    current_app.logger.info("Notification to %s: %s", recipient, message)


def set_dispatcher(app, dispatcher: Dispatcher | None) -> None:
    """Install the delivery callable (recipient, message); None restores logging."""
    app.extensions[_EXTENSION_KEY] = dispatcher or _log_dispatcher


def get_dispatcher() -> Dispatcher:
    return current_app.extensions.get(_EXTENSION_KEY, _log_dispatcher)


def format_cents(cents: int) -> str:
    return f"{cents / 100:,.2f}"


def payment_request_message(order: Order, settings: OrderSettings) -> str:
    lines = [
        f"{settings.shop_name}",
        f"Order {order.invoice_number} received.",
        f"Total due: {format_cents(order.total_cents)} ({order.payment_method})",
    ]
    if order.expires_at is not None:
        lines.append(f"Please complete payment before {to_utc_z(order.expires_at)}.")
    return "\n".join(lines)


def dispatch_payment_request(order: Order, settings: OrderSettings) -> bool:
    """
    Send the payment-request message for a deferred order.

    Never raises: the order is already committed, so a delivery failure is
    logged and reported as False.
    """
    recipient = order.customer_phone
    if not recipient:
        return False
    try:
        get_dispatcher()(recipient, payment_request_message(order, settings))
    except Exception:
        current_app.logger.warning(
            "Failed to dispatch payment request for order %s", order.invoice_number, exc_info=True
        )
        return False
    return True
