# Overview: Allocation planning (FEFO, then FIFO); pure planning, never mutates stock.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from ..errors import InvalidQuantity
from ..models import StockBatch
from .batch_service import get_active_batches_for_product


@dataclass(frozen=True)
class BatchAllocation:
    batch_id: int
    quantity: int

    def to_dict(self) -> dict:
        return {"batch_id": self.batch_id, "quantity": self.quantity}


@dataclass(frozen=True)
class Allocation:
    requested: int
    allocations: tuple[BatchAllocation, ...] = field(default_factory=tuple)
    shortfall: int = 0

    @property
    def allocated(self) -> int:
        return self.requested - self.shortfall

    @property
    def is_complete(self) -> bool:
        return self.shortfall == 0

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "allocations": [a.to_dict() for a in self.allocations],
            "shortfall": self.shortfall,
        }


def allocation_order_key(batch: StockBatch):
    """
    Soonest expiry first, batches without expiry last, then oldest batch,
    then lowest id so equal batches always sort the same way.
    """
    return (
        batch.expiry_date is None,
        batch.expiry_date or datetime.max,
        batch.created_at or datetime.max,
        batch.id,
    )


def plan_allocation(batches: Iterable[StockBatch], requested_quantity: int) -> Allocation:
    """
    Greedy FEFO plan over a batch snapshot.

    Callers pass either a plain read (soft check) or the batches they hold
    locks on (authoritative commit). Batches with no quantity are skipped.
    """
    if requested_quantity is None or requested_quantity <= 0:
        raise InvalidQuantity(
            "requested quantity must be > 0",
            details={"requested": requested_quantity},
        )

    remaining = requested_quantity
    plan: list[BatchAllocation] = []
    for batch in sorted(batches, key=allocation_order_key):
        if remaining <= 0:
            break
        if batch.quantity <= 0 or not batch.is_active:
            continue
        take = min(remaining, batch.quantity)
        plan.append(BatchAllocation(batch_id=batch.id, quantity=take))
        remaining -= take

    return Allocation(
        requested=requested_quantity,
        allocations=tuple(plan),
        shortfall=remaining,
    )


def allocate(product_id: int, requested_quantity: int, now: datetime | None = None) -> Allocation:
    """Plan an allocation against the product's current sellable batches."""
    return plan_allocation(get_active_batches_for_product(product_id, now=now), requested_quantity)
