from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..errors import LedgerInvariantViolation
from posledger.time_utils import utcnow, to_utc_z


LEDGER_TYPES = ("IN", "OUT", "ADJUSTMENT", "EXPIRED", "RETURN")


class StockBatch(db.Model):
    """
    One physical lot of a product.

    INVARIANTS:
    - quantity >= 0 (also enforced by a CHECK constraint)
    - batch_code is unique per product when present
    - rows are never deleted; a written-off batch is deactivated
    - quantity is only changed through batch_service.post_movement(), which
      appends the matching ledger entry in the same DB transaction

    version_id gives compare-and-swap updates on databases that do not
    honor SELECT ... FOR UPDATE.
    """
    __tablename__ = "stock_batches"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_stock_batches_quantity_nonneg"),
        db.Index(
            "uq_stock_batches_product_code",
            "product_id",
            "batch_code",
            unique=True,
            sqlite_where=db.text("batch_code IS NOT NULL"),
            postgresql_where=db.text("batch_code IS NOT NULL"),
        ),
        db.Index("ix_stock_batches_product_active", "product_id", "is_active"),
        db.Index("ix_stock_batches_expiry", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    batch_code = db.Column(db.String(100), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)

    # Authoritative storage in cents
    purchase_price_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)

    expiry_date = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product", backref=db.backref("batches", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<StockBatch id={self.id} product_id={self.product_id} code={self.batch_code!r} qty={self.quantity}>"

    def is_expired(self, now) -> bool:
        return self.expiry_date is not None and self.expiry_date <= now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "batch_code": self.batch_code,
            "quantity": self.quantity,
            "purchase_price_cents": self.purchase_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "expiry_date": to_utc_z(self.expiry_date),
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LedgerEntry(db.Model):
    """
    Append-only stock movement record.

    Every quantity change of a StockBatch has exactly one entry with
    quantity_after == quantity_before + quantity_delta. Replaying a batch's
    entries ordered by (created_at, id) from 0 reproduces its quantity.
    """
    __tablename__ = "stock_ledger"
    __table_args__ = (
        db.Index("ix_stock_ledger_product_created", "product_id", "created_at", "id"),
        db.Index("ix_stock_ledger_batch_created", "batch_id", "created_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    batch_id = db.Column(db.Integer, db.ForeignKey("stock_batches.id"), nullable=True)

    type = db.Column(db.String(16), nullable=False, index=True)

    quantity_delta = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    notes = db.Column(db.Text, nullable=True)
    actor_id = db.Column(db.String(64), nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    # Python-side default: microsecond resolution keeps replay order stable
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "type": self.type,
            "quantity_delta": self.quantity_delta,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "notes": self.notes,
            "actor_id": self.actor_id,
            "order_id": self.order_id,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerInvariantViolation(
        "Ledger entries are append-only",
        details={"entry_id": target.id},
    )


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerInvariantViolation(
        "Ledger entries are append-only",
        details={"entry_id": target.id},
    )
