# Overview: Expiry write-offs; shared by the scheduled CLI command and the manual API trigger.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import StockBatch
from posledger.time_utils import utcnow
from .batch_service import post_movement
from .concurrency import begin_write, lock_for_update, run_with_retry


@dataclass(frozen=True)
class SweepResult:
    processed_count: int
    batch_ids: tuple[int, ...] = ()

    def to_dict(self) -> dict:
        return {"processed_count": self.processed_count, "batch_ids": list(self.batch_ids)}


def sweep(now: datetime | None = None, actor_id: str | None = None) -> SweepResult:
    """
    Write off every active batch whose expiry has passed.

    Each batch with stock left is zeroed, deactivated and logged as EXPIRED
    (delta = -quantity_before). Expired batches already at zero are only
    deactivated. Batches are locked in id order like any sale, so a sale and
    the sweep never both act on the same quantity. Running it twice in a row
    processes nothing the second time.
    """
    def _op():
        begin_write()
        ts = now or utcnow()

        expired = lock_for_update(
            db.session.query(StockBatch)
            .filter(
                StockBatch.is_active.is_(True),
                StockBatch.expiry_date.isnot(None),
                StockBatch.expiry_date <= ts,
            )
            .order_by(StockBatch.id.asc())
        ).populate_existing().all()

        processed = []
        for batch in expired:
            if batch.quantity > 0:
                post_movement(
                    batch,
                    -batch.quantity,
                    "EXPIRED",
                    notes=f"Auto expired - {ts.date().isoformat()}",
                    actor_id=actor_id,
                    deactivate=True,
                )
                processed.append(batch.id)
            else:
                batch.is_active = False

        db.session.commit()
        return SweepResult(processed_count=len(processed), batch_ids=tuple(processed))

    result = run_with_retry(_op)
    current_app.logger.info("Expiry sweep processed %s batch(es)", result.processed_count)
    return result
