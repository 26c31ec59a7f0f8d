from __future__ import annotations

from sqlalchemy.orm import validates

from ..extensions import db
from ..errors import InvalidStateTransition
from posledger.time_utils import utcnow, to_utc_z


class StatusChange:
    """
    Carrier for a status value through Order's write guard.

    Only services.order_state builds these; assigning a bare string to
    Order.status raises.
    """
    __slots__ = ("status",)

    def __init__(self, status: str):
        self.status = status


class Order(db.Model):
    """
    Sale / online order document.

    Stock effect is a function of (channel, status) only, see
    services.order_state.stock_committed(). Allocations on the items are
    present exactly while stock is committed.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_orders_invoice_number"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.Index("ix_orders_channel_status_expires", "channel", "status", "expires_at"),
        db.Index("ix_orders_customer_phone_status", "customer_phone", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable invoice number (e.g., "INV-20261019-0001")
    invoice_number = db.Column(db.String(32), nullable=False)

    channel = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False)

    # Amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False)
    payment_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    change_cents = db.Column(db.Integer, nullable=False, default=0)

    customer_name = db.Column(db.String(100), nullable=True)
    customer_phone = db.Column(db.String(20), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    actor_id = db.Column(db.String(64), nullable=True)

    # Payment deadline for deferred (online) orders
    expires_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @validates("status")
    def _guard_status(self, key, value):
        if not isinstance(value, StatusChange):
            raise InvalidStateTransition(
                "Order status can only change through the order state machine",
                details={"order_id": self.id, "attempted": value},
            )
        return value.status

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "channel": self.channel,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "payment_amount_cents": self.payment_amount_cents,
            "change_cents": self.change_cents,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "notes": self.notes,
            "cancel_reason": self.cancel_reason,
            "actor_id": self.actor_id,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Individual line items on an order."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    subtotal_cents = db.Column(db.Integer, nullable=False)

    allocations = db.relationship(
        "OrderItemAllocation",
        backref="order_item",
        lazy=True,
        order_by="OrderItemAllocation.batch_id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
            "batch_allocations": [a.to_dict() for a in self.allocations],
        }


class OrderItemAllocation(db.Model):
    """Quantity of an order item drawn from one batch (back-reference only)."""
    __tablename__ = "order_item_allocations"
    __table_args__ = (
        db.UniqueConstraint("order_item_id", "batch_id", name="uq_order_item_allocations_item_batch"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("stock_batches.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {"batch_id": self.batch_id, "quantity": self.quantity}
