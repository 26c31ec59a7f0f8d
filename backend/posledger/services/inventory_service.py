# Overview: Manual stock movements (adjustments, non-order stock-out) across batches.

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..errors import InsufficientStock, InvalidQuantity, NotFound, ValidationError
from ..models import LedgerEntry, StockBatch
from ..validation import StockOutInput
from posledger.time_utils import utcnow
from .allocation_service import plan_allocation
from .batch_service import find_batch_by_code, lock_sellable_batches, post_movement
from .catalog_service import get_product
from .concurrency import begin_write, lock_for_update, run_with_retry
"""
Manual Movement Rules (authoritative)

- Every movement goes through batch_service.post_movement(), one ledger entry
  per touched batch, all in one DB transaction.
- Decreases without a batch code draw across sellable batches in FEFO order,
  the same order sales use.
- Increases without a batch code land on the product's unbatched batch
  (batch_code NULL, no expiry), which is created on demand.
- No movement may leave a batch below zero.
"""


def _named_batch(product_id: int, batch_code: str) -> StockBatch:
    batch = find_batch_by_code(product_id, batch_code, lock=True)
    if batch is None:
        raise NotFound(
            f"Batch {batch_code!r} not found for product {product_id}",
            details={"product_id": product_id, "batch_code": batch_code},
        )
    return batch


def _unbatched_batch(product_id: int) -> StockBatch:
    """
    Locked unbatched batch of a product; created empty from the latest batch's prices.

    Only a batch without code and without expiry qualifies. Code-less stock-ins
    that carry an expiry date are separate lots, and a recount increase must
    not land in a lot that is about to be written off.
    """
    batch = lock_for_update(
        db.session.query(StockBatch)
        .filter(
            StockBatch.product_id == product_id,
            StockBatch.batch_code.is_(None),
            StockBatch.expiry_date.is_(None),
            StockBatch.is_active.is_(True),
        )
        .order_by(StockBatch.id.asc())
    ).populate_existing().first()
    if batch is not None:
        return batch

    latest = (
        db.session.query(StockBatch)
        .filter(StockBatch.product_id == product_id)
        .order_by(StockBatch.id.desc())
        .first()
    )
    batch = StockBatch(
        product_id=product_id,
        batch_code=None,
        quantity=0,
        purchase_price_cents=latest.purchase_price_cents if latest else 0,
        selling_price_cents=latest.selling_price_cents if latest else 0,
        expiry_date=None,
        is_active=True,
    )
    db.session.add(batch)
    db.session.flush()
    return batch


def _draw_fefo(product_id: int, quantity: int, now: datetime):
    batches = lock_sellable_batches([product_id], now)[product_id]
    plan = plan_allocation(batches, quantity)
    return plan, {b.id: b for b in batches}


def adjust_stock(
    product_id: int,
    delta: int,
    reason: str,
    batch_code: str | None = None,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> list[LedgerEntry]:
    """Signed manual correction, written as ADJUSTMENT entries."""
    if delta is None or delta == 0:
        raise InvalidQuantity("adjustment delta must be non-zero", details={"delta": delta})
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("adjustment reason is required")

    def _op():
        begin_write()
        ts = now or utcnow()
        get_product(product_id)

        if batch_code is not None:
            batch = _named_batch(product_id, batch_code)
            if batch.quantity + delta < 0:
                raise InvalidQuantity(
                    "Adjustment would make batch quantity negative",
                    details={"batch_id": batch.id, "quantity": batch.quantity, "delta": delta},
                )
            entries = [
                post_movement(batch, delta, "ADJUSTMENT", notes=reason, actor_id=actor_id)
            ]
        elif delta > 0:
            batch = _unbatched_batch(product_id)
            entries = [
                post_movement(batch, delta, "ADJUSTMENT", notes=reason, actor_id=actor_id)
            ]
        else:
            plan, batches_by_id = _draw_fefo(product_id, -delta, ts)
            if not plan.is_complete:
                raise InvalidQuantity(
                    "Adjustment would make stock negative",
                    details={"product_id": product_id, "available": plan.allocated, "delta": delta},
                )
            entries = [
                post_movement(
                    batches_by_id[a.batch_id], -a.quantity, "ADJUSTMENT",
                    notes=reason, actor_id=actor_id,
                )
                for a in plan.allocations
            ]

        db.session.commit()
        return entries

    return run_with_retry(_op)


def stock_out(data: StockOutInput, actor_id: str | None = None, now: datetime | None = None) -> list[LedgerEntry]:
    """Remove stock outside of an order (damage, internal use), as OUT entries."""
    if data.quantity is None or data.quantity <= 0:
        raise InvalidQuantity("quantity must be > 0", details={"quantity": data.quantity})

    def _op():
        begin_write()
        ts = now or utcnow()
        get_product(data.product_id)
        notes = data.notes or "Stock out"

        if data.batch_code is not None:
            batch = _named_batch(data.product_id, data.batch_code)
            available = batch.quantity if batch.is_active and not batch.is_expired(ts) else 0
            if available < data.quantity:
                raise InsufficientStock(
                    f"Insufficient stock in batch {data.batch_code!r}",
                    details={
                        "product_id": data.product_id,
                        "batch_code": data.batch_code,
                        "requested": data.quantity,
                        "available": available,
                    },
                )
            entries = [post_movement(batch, -data.quantity, "OUT", notes=notes, actor_id=actor_id)]
        else:
            plan, batches_by_id = _draw_fefo(data.product_id, data.quantity, ts)
            if not plan.is_complete:
                raise InsufficientStock(
                    "Insufficient stock",
                    details={
                        "product_id": data.product_id,
                        "requested": data.quantity,
                        "available": plan.allocated,
                    },
                )
            entries = [
                post_movement(batches_by_id[a.batch_id], -a.quantity, "OUT", notes=notes, actor_id=actor_id)
                for a in plan.allocations
            ]

        db.session.commit()
        return entries

    return run_with_retry(_op)
