# Overview: Service-layer operations for stock batches; the only place batch quantities change.

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import DuplicateBatchCode, InvalidQuantity, NotFound, ValidationError
from ..models import LedgerEntry, Product, StockBatch
from ..validation import StockInInput
from posledger.time_utils import utcnow
from .catalog_service import get_product
from .concurrency import begin_write, lock_for_update, run_with_retry
from .ledger_service import append_entry
"""
Stock Batch Store Invariants (authoritative)

- StockBatch.quantity >= 0 at all times.
- post_movement() is the single writer of StockBatch.quantity, and it always
  appends exactly one ledger entry in the same DB transaction.
- Sellable stock = active batches with quantity > 0 that are not past expiry.
  Expired batches stop being sellable immediately, even before the sweeper
  writes them off.
- total_quantity() is the single source of availability; callers never re-sum
  batches themselves.
"""


def _sellable_filter(now: datetime):
    return (
        StockBatch.is_active.is_(True),
        StockBatch.quantity > 0,
        or_(StockBatch.expiry_date.is_(None), StockBatch.expiry_date > now),
    )


def get_batch(batch_id: int) -> StockBatch:
    batch = db.session.get(StockBatch, batch_id)
    if batch is None:
        raise NotFound(f"Batch {batch_id} not found", details={"batch_id": batch_id})
    return batch


def find_batch_by_code(product_id: int, batch_code: str, *, lock: bool = False) -> StockBatch | None:
    query = db.session.query(StockBatch).filter_by(product_id=product_id, batch_code=batch_code)
    if lock:
        query = lock_for_update(query)
    return query.first()


def get_active_batches_for_product(product_id: int, now: datetime | None = None) -> list[StockBatch]:
    """Sellable batches of one product, oldest id first (allocation re-sorts them)."""
    now = now or utcnow()
    return (
        db.session.query(StockBatch)
        .filter(StockBatch.product_id == product_id, *_sellable_filter(now))
        .order_by(StockBatch.id.asc())
        .all()
    )


def total_quantity(product_id: int, now: datetime | None = None) -> int:
    now = now or utcnow()
    q = db.session.query(func.coalesce(func.sum(StockBatch.quantity), 0)).filter(
        StockBatch.product_id == product_id, *_sellable_filter(now)
    )
    return int(q.scalar() or 0)


def lock_sellable_batches(product_ids, now: datetime) -> dict[int, list[StockBatch]]:
    """
    Lock every sellable batch of the given products for the current transaction.

    One query, ordered by ascending batch id, so two multi-product operations
    always acquire row locks in the same order.
    """
    product_ids = sorted(set(product_ids))
    by_product: dict[int, list[StockBatch]] = {pid: [] for pid in product_ids}
    if not product_ids:
        return by_product

    rows = lock_for_update(
        db.session.query(StockBatch)
        .filter(StockBatch.product_id.in_(product_ids), *_sellable_filter(now))
        .order_by(StockBatch.id.asc())
    ).populate_existing().all()

    for batch in rows:
        by_product[batch.product_id].append(batch)
    return by_product


def lock_batches_by_id(batch_ids) -> dict[int, StockBatch]:
    """Lock specific batches (active or not) in ascending id order."""
    batch_ids = sorted(set(batch_ids))
    if not batch_ids:
        return {}
    rows = lock_for_update(
        db.session.query(StockBatch)
        .filter(StockBatch.id.in_(batch_ids))
        .order_by(StockBatch.id.asc())
    ).populate_existing().all()
    return {batch.id: batch for batch in rows}


def post_movement(
    batch: StockBatch,
    quantity_delta: int,
    entry_type: str,
    *,
    notes: str | None = None,
    actor_id: str | None = None,
    order_id: int | None = None,
    deactivate: bool = False,
) -> LedgerEntry:
    """
    Apply a signed quantity change to a locked batch and append its ledger entry.

    Does not commit. Raises InvalidQuantity when the batch would go negative.
    """
    before = batch.quantity
    after = before + quantity_delta
    if after < 0:
        raise InvalidQuantity(
            f"Batch {batch.id} cannot go below zero",
            details={"batch_id": batch.id, "quantity": before, "delta": quantity_delta},
        )

    batch.quantity = after
    if deactivate:
        batch.is_active = False
    elif quantity_delta > 0:
        batch.is_active = True

    entry = append_entry(
        product_id=batch.product_id,
        batch_id=batch.id,
        entry_type=entry_type,
        quantity_delta=quantity_delta,
        quantity_before=before,
        quantity_after=after,
        notes=notes,
        actor_id=actor_id,
        order_id=order_id,
    )
    db.session.flush()
    return entry


def _create_batch_inner(
    *,
    product_id: int,
    quantity: int,
    purchase_price_cents: int,
    selling_price_cents: int,
    batch_code: str | None,
    expiry_date: datetime | None,
    notes: str | None,
    actor_id: str | None,
    entry_type: str = "IN",
) -> tuple[StockBatch, LedgerEntry]:
    """Core create logic without locking, retry or commit."""
    if quantity is None or quantity <= 0:
        raise InvalidQuantity("quantity must be > 0", details={"quantity": quantity})

    if batch_code is not None and find_batch_by_code(product_id, batch_code) is not None:
        raise DuplicateBatchCode(
            f"Batch code {batch_code!r} already exists for product {product_id}",
            details={"product_id": product_id, "batch_code": batch_code},
        )

    batch = StockBatch(
        product_id=product_id,
        batch_code=batch_code,
        quantity=0,
        purchase_price_cents=purchase_price_cents,
        selling_price_cents=selling_price_cents,
        expiry_date=expiry_date,
        is_active=True,
    )
    db.session.add(batch)
    try:
        db.session.flush()
    except IntegrityError:
        raise DuplicateBatchCode(
            f"Batch code {batch_code!r} already exists for product {product_id}",
            details={"product_id": product_id, "batch_code": batch_code},
        )

    entry = post_movement(
        batch,
        quantity,
        entry_type,
        notes=notes or "Stock in",
        actor_id=actor_id,
    )
    return batch, entry


def create_batch(
    *,
    product_id: int,
    quantity: int,
    purchase_price_cents: int,
    selling_price_cents: int,
    batch_code: str | None = None,
    expiry_date: datetime | None = None,
    notes: str | None = None,
    actor_id: str | None = None,
) -> StockBatch:
    """Create a new batch; its initial quantity is logged as IN from 0."""
    if quantity is None or quantity <= 0:
        raise InvalidQuantity("quantity must be > 0", details={"quantity": quantity})

    def _op():
        begin_write()
        get_product(product_id, require_active=True)
        batch, _entry = _create_batch_inner(
            product_id=product_id,
            quantity=quantity,
            purchase_price_cents=purchase_price_cents,
            selling_price_cents=selling_price_cents,
            batch_code=batch_code,
            expiry_date=expiry_date,
            notes=notes,
            actor_id=actor_id,
        )
        db.session.commit()
        return batch

    return run_with_retry(_op)


def top_up(batch_id: int, quantity: int, notes: str | None = None, actor_id: str | None = None) -> StockBatch:
    """Increase an existing batch; concurrent top-ups serialize on the batch lock."""
    if quantity is None or quantity <= 0:
        raise InvalidQuantity("quantity must be > 0", details={"quantity": quantity})

    def _op():
        begin_write()
        locked = lock_batches_by_id([batch_id])
        batch = locked.get(batch_id)
        if batch is None:
            raise NotFound(f"Batch {batch_id} not found", details={"batch_id": batch_id})
        post_movement(batch, quantity, "IN", notes=notes or "Stock top-up", actor_id=actor_id)
        db.session.commit()
        return batch

    return run_with_retry(_op)


def stock_in(data: StockInInput, actor_id: str | None = None) -> tuple[StockBatch, LedgerEntry]:
    """
    Receive stock.

    A batch_code naming an existing batch of the product tops that batch up
    (prices and expiry are refreshed from the input); anything else creates
    a new batch.
    """
    def _op():
        begin_write()
        get_product(data.product_id, require_active=True)

        existing = None
        if data.batch_code is not None:
            existing = find_batch_by_code(data.product_id, data.batch_code, lock=True)

        if existing is None:
            batch, entry = _create_batch_inner(
                product_id=data.product_id,
                quantity=data.quantity,
                purchase_price_cents=data.purchase_price_cents,
                selling_price_cents=data.selling_price_cents,
                batch_code=data.batch_code,
                expiry_date=data.expiry_date,
                notes=data.notes,
                actor_id=actor_id,
            )
        else:
            batch = existing
            batch.purchase_price_cents = data.purchase_price_cents
            batch.selling_price_cents = data.selling_price_cents
            if data.expiry_date is not None:
                batch.expiry_date = data.expiry_date
            entry = post_movement(
                batch,
                data.quantity,
                "IN",
                notes=data.notes or "Stock top-up",
                actor_id=actor_id,
            )

        db.session.commit()
        return batch, entry

    return run_with_retry(_op)


def availability(product_id: int, now: datetime | None = None) -> dict:
    now = now or utcnow()
    product = get_product(product_id)
    batches = get_active_batches_for_product(product_id, now=now)
    return {
        "product_id": product.id,
        "total_quantity": total_quantity(product_id, now=now),
        "min_stock": product.min_stock,
        "batches": [
            {
                "batch_id": b.id,
                "batch_code": b.batch_code,
                "quantity": b.quantity,
                "selling_price_cents": b.selling_price_cents,
                "expiry_date": b.to_dict()["expiry_date"],
            }
            for b in batches
        ],
    }


def list_stock(
    *,
    product_id: int | None = None,
    low_stock: bool = False,
    near_expiry: bool = False,
    include_empty: bool = False,
    page: int = 1,
    limit: int = 20,
    near_expiry_days: int = 30,
    now: datetime | None = None,
) -> dict:
    """
    Paginated batch listing with computed status flags.

    - is_low_stock: the product's sellable total is at or below min_stock
    - is_near_expiry: expiry within near_expiry_days (and not yet passed)
    - is_expired: expiry has passed (awaiting the sweeper if still active)
    """
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1:
        raise ValidationError("limit must be >= 1")
    limit = min(limit, 200)
    now = now or utcnow()
    horizon = now + timedelta(days=near_expiry_days)

    totals = (
        db.session.query(
            StockBatch.product_id.label("product_id"),
            func.sum(StockBatch.quantity).label("total"),
        )
        .filter(*_sellable_filter(now))
        .group_by(StockBatch.product_id)
        .subquery()
    )
    product_total = func.coalesce(totals.c.total, 0)

    q = (
        db.session.query(StockBatch, Product, product_total)
        .join(Product, Product.id == StockBatch.product_id)
        .outerjoin(totals, totals.c.product_id == StockBatch.product_id)
    )
    if not include_empty:
        q = q.filter(StockBatch.is_active.is_(True), StockBatch.quantity > 0)
    if product_id is not None:
        q = q.filter(StockBatch.product_id == product_id)
    if low_stock:
        q = q.filter(product_total <= Product.min_stock)
    if near_expiry:
        q = q.filter(StockBatch.expiry_date.isnot(None), StockBatch.expiry_date <= horizon)

    total = q.count()
    rows = (
        q.order_by(
            StockBatch.expiry_date.is_(None),
            StockBatch.expiry_date.asc(),
            StockBatch.id.asc(),
        )
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    items = []
    for batch, product, product_qty in rows:
        data = batch.to_dict()
        data.update({
            "product_name": product.name,
            "unit": product.unit,
            "product_total_quantity": int(product_qty or 0),
            "is_low_stock": int(product_qty or 0) <= product.min_stock,
            "is_expired": batch.is_expired(now),
            "is_near_expiry": (
                batch.expiry_date is not None and now < batch.expiry_date <= horizon
            ),
        })
        items.append(data)

    return {
        "items": items,
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        },
    }
