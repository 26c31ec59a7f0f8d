"""
Order Service - create / confirm / cancel orders against the stock ledger.

WHY: Composes the allocation engine, the order state machine and the batch
store so that a status change and every stock movement it implies commit
together or not at all.

Lock order (all operations): order row first, then batches by ascending id.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_

from ..config import OrderSettings
from ..extensions import db
from ..errors import (
    InsufficientStock,
    InvalidStateTransition,
    NotFound,
    OrderLimitExceeded,
    PaymentError,
    ValidationError,
)
from ..models import Order, OrderItem, OrderItemAllocation
from ..validation import CHANNELS, CreateOrderInput
from posledger.time_utils import utcnow
from . import order_state
from .allocation_service import plan_allocation
from .batch_service import (
    get_active_batches_for_product,
    lock_batches_by_id,
    lock_sellable_batches,
    post_movement,
)
from .catalog_service import get_product
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import next_invoice_number
from .notification_service import dispatch_payment_request


EXPIRED_PAYMENT_REASON = "Payment window expired"


def _div_round_half_up(numerator: int, denominator: int) -> int:
    return (numerator + (denominator // 2)) // denominator


def compute_tax(taxable_cents: int, tax_rate_bps: int) -> int:
    if taxable_cents <= 0 or tax_rate_bps <= 0:
        return 0
    return _div_round_half_up(taxable_cents * tax_rate_bps, 10_000)


def _lock_order(order_id: int) -> Order:
    order = (
        lock_for_update(db.session.query(Order).filter_by(id=order_id))
        .populate_existing()
        .first()
    )
    if order is None:
        raise NotFound(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _plan_items(items, batches_by_product) -> dict:
    plans = {}
    short = []
    for item in items:
        plan = plan_allocation(batches_by_product.get(item.product_id, []), item.quantity)
        if not plan.is_complete:
            short.append({
                "product_id": item.product_id,
                "requested": item.quantity,
                "available": plan.allocated,
            })
        plans[item.product_id] = plan

    if short:
        raise InsufficientStock("Insufficient stock", details={"items": short})
    return plans


def _commit_allocations(order: Order, order_item: OrderItem, plan, batches_by_id, actor_id) -> None:
    for alloc in plan.allocations:
        post_movement(
            batches_by_id[alloc.batch_id],
            -alloc.quantity,
            "OUT",
            notes=f"Sale {order.invoice_number}",
            actor_id=actor_id,
            order_id=order.id,
        )
        order_item.allocations.append(
            OrderItemAllocation(batch_id=alloc.batch_id, quantity=alloc.quantity)
        )


def _payment_deadline(channel: str, payment_method: str, settings: OrderSettings, now: datetime):
    if channel != order_state.ONLINE:
        return None
    if payment_method == "CASH":
        return now + timedelta(hours=settings.online_cash_hold_hours)
    return now + timedelta(hours=settings.online_transfer_hold_hours)


def create_order(
    data: CreateOrderInput,
    settings: OrderSettings,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Create an order.

    - IN_PERSON: stock is allocated on locked batches and deducted now.
    - ONLINE: availability is soft-checked (plan discarded, nothing held),
      the order starts PENDING and stock is deducted on confirmation.
    Any shortfall on either path raises InsufficientStock and persists nothing.
    """
    items = data.merged_items()
    if not items:
        raise ValidationError("items must be a non-empty list")

    def _op():
        begin_write()
        ts = now or utcnow()

        for item in items:
            get_product(item.product_id, require_active=True)

        if (
            data.channel == order_state.ONLINE
            and data.customer_phone
            and settings.max_pending_online_per_phone > 0
        ):
            pending = Order.query.filter(
                Order.customer_phone == data.customer_phone,
                Order.channel == order_state.ONLINE,
                Order.status.in_([order_state.PENDING, order_state.PROCESSING]),
            ).count()
            if pending >= settings.max_pending_online_per_phone:
                raise OrderLimitExceeded(
                    f"Customer already has {pending} pending online orders",
                    details={"pending": pending, "limit": settings.max_pending_online_per_phone},
                )

        status = order_state.initial_status(data.channel, data.payment)
        commit_now = order_state.stock_committed(data.channel, status)

        product_ids = [item.product_id for item in items]
        if commit_now:
            batches_by_product = lock_sellable_batches(product_ids, ts)
        else:
            batches_by_product = {
                pid: get_active_batches_for_product(pid, now=ts) for pid in product_ids
            }
        batches_by_id = {b.id: b for batches in batches_by_product.values() for b in batches}

        plans = _plan_items(items, batches_by_product)

        # Each line is priced at the selling price of the first batch it draws from
        lines = []
        subtotal = 0
        for item in items:
            first_batch = batches_by_id[plans[item.product_id].allocations[0].batch_id]
            unit_price = first_batch.selling_price_cents
            lines.append((item, unit_price, unit_price * item.quantity))
            subtotal += unit_price * item.quantity

        if data.discount_cents > subtotal:
            raise ValidationError("discount_cents cannot exceed the order subtotal")

        taxable = subtotal - data.discount_cents
        tax = compute_tax(taxable, settings.tax_rate_bps)
        total = taxable + tax

        payment_amount = total
        change = 0
        if data.payment.method == "CASH" and data.channel == order_state.IN_PERSON:
            if data.payment.amount_cents < total:
                raise PaymentError(
                    "Cash payment does not cover the order total",
                    details={
                        "total_cents": total,
                        "payment_amount_cents": data.payment.amount_cents,
                        "short_cents": total - data.payment.amount_cents,
                    },
                )
            payment_amount = data.payment.amount_cents
            change = payment_amount - total

        order = Order(
            invoice_number=next_invoice_number(ts),
            subtotal_cents=subtotal,
            discount_cents=data.discount_cents,
            tax_cents=tax,
            total_cents=total,
            payment_method=data.payment.method,
            payment_amount_cents=payment_amount,
            change_cents=change,
            customer_name=data.customer_name
            or ("Online Customer" if data.channel == order_state.ONLINE else "Guest"),
            customer_phone=data.customer_phone,
            notes=data.notes,
            actor_id=actor_id,
            expires_at=_payment_deadline(data.channel, data.payment.method, settings, ts),
            created_at=ts,
        )
        order_state.start(order, data.channel, data.payment)
        if status == order_state.COMPLETED:
            order.completed_at = ts
        db.session.add(order)
        db.session.flush()

        for item, unit_price, line_subtotal in lines:
            order_item = OrderItem(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price_cents=unit_price,
                subtotal_cents=line_subtotal,
            )
            order.items.append(order_item)
            db.session.flush()
            if commit_now:
                _commit_allocations(order, order_item, plans[item.product_id], batches_by_id, actor_id)

        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info(
        "Order %s created (%s, %s)", order.invoice_number, order.channel, order.status
    )

    if order.channel == order_state.ONLINE:
        dispatch_payment_request(order, settings)
    return order


def mark_processing(order_id: int, actor_id: str | None = None) -> Order:
    """PENDING -> PROCESSING (staff reviewing a transfer). No stock effect."""
    def _op():
        begin_write()
        order = _lock_order(order_id)
        order_state.transition(order, order_state.PROCESSING)
        db.session.commit()
        return order

    return run_with_retry(_op)


def confirm_order(order_id: int, actor_id: str | None = None, now: datetime | None = None) -> Order:
    """
    Complete an order.

    If its stock is not committed yet (online orders), allocation is re-run on
    locked batches and committed; a shortfall raises InsufficientStock and the
    order keeps its current status.
    """
    def _op():
        begin_write()
        ts = now or utcnow()
        order = _lock_order(order_id)
        order_state.assert_transition(order, order_state.COMPLETED)

        if not order_state.stock_committed(order.channel, order.status):
            batches_by_product = lock_sellable_batches(
                [item.product_id for item in order.items], ts
            )
            batches_by_id = {b.id: b for batches in batches_by_product.values() for b in batches}
            plans = _plan_items(order.items, batches_by_product)
            for order_item in order.items:
                _commit_allocations(order, order_item, plans[order_item.product_id], batches_by_id, actor_id)

        order_state.transition(order, order_state.COMPLETED)
        order.completed_at = ts
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order %s confirmed", order.invoice_number)
    return order


def _reverse_allocations(order: Order, reason: str, actor_id: str | None) -> None:
    allocations = [a for item in order.items for a in item.allocations]
    batches_by_id = lock_batches_by_id([a.batch_id for a in allocations])
    for order_item in order.items:
        for alloc in list(order_item.allocations):
            post_movement(
                batches_by_id[alloc.batch_id],
                alloc.quantity,
                "RETURN",
                notes=f"Cancel {order.invoice_number}: {reason}",
                actor_id=actor_id,
                order_id=order.id,
            )
        # allocations only exist while stock is committed
        order_item.allocations.clear()
    db.session.flush()


def cancel_order(
    order_id: int,
    reason: str,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Order:
    """Cancel a non-terminal order, returning any committed stock to its batches."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required")

    def _op():
        begin_write()
        ts = now or utcnow()
        order = _lock_order(order_id)
        order_state.assert_transition(order, order_state.CANCELLED)

        if order_state.stock_committed(order.channel, order.status):
            _reverse_allocations(order, reason, actor_id)

        order_state.transition(order, order_state.CANCELLED)
        order.cancel_reason = reason[:255]
        order.cancelled_at = ts
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order %s cancelled: %s", order.invoice_number, reason)
    return order


def cancel_expired_orders(now: datetime | None = None) -> int:
    """
    Cancel online orders whose payment window has passed.

    Orders completed or cancelled between the scan and the cancel are skipped.
    """
    ts = now or utcnow()
    order_ids = [
        row.id
        for row in db.session.query(Order.id)
        .filter(
            Order.channel == order_state.ONLINE,
            Order.status.in_([order_state.PENDING, order_state.PROCESSING]),
            Order.expires_at.isnot(None),
            Order.expires_at <= ts,
        )
        .order_by(Order.id.asc())
        .all()
    ]

    cancelled = 0
    for order_id in order_ids:
        try:
            cancel_order(order_id, EXPIRED_PAYMENT_REASON, now=ts)
        except InvalidStateTransition:
            current_app.logger.info("Order %s settled before expiry cancel; skipped", order_id)
            continue
        cancelled += 1
    return cancelled


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def get_order_by_invoice(invoice_number: str) -> Order:
    order = Order.query.filter_by(invoice_number=invoice_number).first()
    if order is None:
        raise NotFound(
            f"Order {invoice_number} not found", details={"invoice_number": invoice_number}
        )
    return order


def list_orders(
    *,
    status: str | None = None,
    channel: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1:
        raise ValidationError("limit must be >= 1")
    limit = min(limit, 200)

    q = Order.query
    if status:
        status = status.upper()
        if status not in order_state.VALID_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(sorted(order_state.VALID_STATUSES))}")
        q = q.filter(Order.status == status)
    if channel:
        channel = channel.upper()
        if channel not in CHANNELS:
            raise ValidationError(f"channel must be one of: {', '.join(CHANNELS)}")
        q = q.filter(Order.channel == channel)
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(
            or_(
                Order.invoice_number.like(like),
                Order.customer_name.like(like),
                Order.customer_phone.like(like),
            )
        )

    total = q.count()
    rows = (
        q.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "items": [o.to_dict(include_items=False) for o in rows],
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        },
    }
