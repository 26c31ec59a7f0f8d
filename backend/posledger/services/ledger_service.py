# Overview: Service-layer operations for the stock ledger; append-only movement log.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import and_, or_

from ..extensions import db
from ..errors import LedgerInvariantViolation, ValidationError
from ..models import LedgerEntry, LEDGER_TYPES
from posledger.time_utils import parse_iso_datetime, to_utc_z, utcnow
"""
Stock Ledger Invariants (authoritative)

- Append-only: entries are never updated or deleted (ORM listeners reject both).
- quantity_after == quantity_before + quantity_delta, and neither side is negative.
- Delta sign matches the type: IN/RETURN > 0, OUT/EXPIRED < 0, ADJUSTMENT != 0.
- Entries are written inside the same DB transaction as the batch change they justify.
- Read order is newest-first by (created_at, id); replay order is the reverse.
"""

MAX_HISTORY_LIMIT = 500

_POSITIVE_TYPES = {"IN", "RETURN"}
_NEGATIVE_TYPES = {"OUT", "EXPIRED"}


@dataclass(frozen=True)
class HistoryPage:
    items: list[LedgerEntry]
    next_cursor: Optional[str]


def _check_entry(entry_type: str, quantity_delta: int, quantity_before: int, quantity_after: int) -> None:
    context = {
        "type": entry_type,
        "quantity_delta": quantity_delta,
        "quantity_before": quantity_before,
        "quantity_after": quantity_after,
    }
    if entry_type not in LEDGER_TYPES:
        raise LedgerInvariantViolation(f"Unknown ledger entry type {entry_type!r}", details=context)
    for value in (quantity_delta, quantity_before, quantity_after):
        if not isinstance(value, int) or isinstance(value, bool):
            raise LedgerInvariantViolation("Ledger quantities must be integers", details=context)
    if quantity_before < 0 or quantity_after < 0:
        raise LedgerInvariantViolation("Ledger quantities cannot be negative", details=context)
    if quantity_after != quantity_before + quantity_delta:
        raise LedgerInvariantViolation("quantity_after != quantity_before + quantity_delta", details=context)
    if quantity_delta == 0:
        raise LedgerInvariantViolation("Ledger entries must change quantity", details=context)
    if entry_type in _POSITIVE_TYPES and quantity_delta < 0:
        raise LedgerInvariantViolation(f"{entry_type} entries must increase quantity", details=context)
    if entry_type in _NEGATIVE_TYPES and quantity_delta > 0:
        raise LedgerInvariantViolation(f"{entry_type} entries must decrease quantity", details=context)


def append_entry(
    *,
    product_id: int,
    batch_id: int | None,
    entry_type: str,
    quantity_delta: int,
    quantity_before: int,
    quantity_after: int,
    notes: str | None = None,
    actor_id: str | None = None,
    order_id: int | None = None,
    created_at: datetime | None = None,
) -> LedgerEntry:
    """
    Append one ledger entry.

    - No domain logic beyond the arithmetic checks.
    - Does not commit; the caller owns the transaction.
    """
    _check_entry(entry_type, quantity_delta, quantity_before, quantity_after)

    entry = LedgerEntry(
        product_id=product_id,
        batch_id=batch_id,
        type=entry_type,
        quantity_delta=quantity_delta,
        quantity_before=quantity_before,
        quantity_after=quantity_after,
        notes=notes,
        actor_id=actor_id,
        order_id=order_id,
        created_at=created_at or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()  # ensures entry.id is assigned without committing
    return entry


def parse_cursor(raw: str | None) -> tuple[datetime, int] | None:
    """Cursor format: <ISO-8601>|<id>."""
    if not raw:
        return None
    try:
        ts_raw, id_raw = raw.split("|", 1)
        ts = parse_iso_datetime(ts_raw)
        entry_id = int(id_raw)
    except ValueError:
        raise ValidationError("cursor must be in format <ISO-8601>|<id>")
    if ts is None:
        raise ValidationError("cursor must be in format <ISO-8601>|<id>")
    return ts, entry_id


def make_cursor(entry: LedgerEntry) -> str:
    return f"{to_utc_z(entry.created_at)}|{entry.id}"


def history(product_id: int, limit: int = 50, before: str | None = None) -> HistoryPage:
    """
    One page of a product's ledger, newest first.

    before is the next_cursor of the previous page; passing it again
    restarts from the same position.
    """
    if limit < 1:
        raise ValidationError("limit must be >= 1")
    limit = min(limit, MAX_HISTORY_LIMIT)

    q = LedgerEntry.query.filter(LedgerEntry.product_id == product_id)

    cursor = parse_cursor(before)
    if cursor is not None:
        cursor_dt, cursor_id = cursor
        q = q.filter(
            or_(
                LedgerEntry.created_at < cursor_dt,
                and_(LedgerEntry.created_at == cursor_dt, LedgerEntry.id < cursor_id),
            )
        )

    rows = (
        q.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(limit + 1)
        .all()
    )

    next_cursor = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_cursor = make_cursor(rows[-1])

    return HistoryPage(items=rows, next_cursor=next_cursor)


def iter_history(product_id: int, page_size: int = 100, before: str | None = None) -> Iterator[LedgerEntry]:
    """Lazily walk a product's whole ledger, newest first, one page per query."""
    cursor = before
    while True:
        page = history(product_id, limit=page_size, before=cursor)
        yield from page.items
        if page.next_cursor is None:
            return
        cursor = page.next_cursor


def entries_for_batch(batch_id: int) -> list[LedgerEntry]:
    return (
        LedgerEntry.query.filter_by(batch_id=batch_id)
        .order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
        .all()
    )


def replay_quantity(batch_id: int) -> int:
    """
    Rebuild a batch's quantity from its ledger.

    Raises LedgerInvariantViolation when consecutive entries do not chain
    (an entry's quantity_before differs from the running total).
    """
    running = 0
    for entry in entries_for_batch(batch_id):
        if entry.quantity_before != running:
            raise LedgerInvariantViolation(
                "Ledger chain broken",
                details={"batch_id": batch_id, "entry_id": entry.id, "expected_before": running},
            )
        running += entry.quantity_delta
    return running
