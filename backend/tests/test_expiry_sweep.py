"""
Expiry sweeper tests.
"""

from datetime import timedelta

from posledger.models import LedgerEntry
from posledger.services import batch_service, expiry_service
from posledger.services.ledger_service import replay_quantity
from posledger.time_utils import utcnow

from conftest import receive


def test_sweep_writes_off_expired_batches(db_session, product):
    expired = receive(product.id, 6, expiry_days=-1)
    fresh = receive(product.id, 4, expiry_days=5)

    result = expiry_service.sweep()
    assert result.processed_count == 1
    assert result.batch_ids == (expired.id,)

    expired = batch_service.get_batch(expired.id)
    assert expired.quantity == 0
    assert expired.is_active is False

    entry = LedgerEntry.query.filter_by(batch_id=expired.id, type="EXPIRED").one()
    assert entry.quantity_before == 6
    assert entry.quantity_delta == -6
    assert entry.quantity_after == 0
    assert replay_quantity(expired.id) == 0

    assert batch_service.get_batch(fresh.id).quantity == 4


def test_sweep_is_idempotent(db_session, product):
    receive(product.id, 3, expiry_days=-1)

    first = expiry_service.sweep()
    second = expiry_service.sweep()

    assert first.processed_count == 1
    assert second.processed_count == 0
    assert LedgerEntry.query.filter_by(type="EXPIRED").count() == 1


def test_sweep_deactivates_empty_expired_batch_without_entry(db_session, product):
    batch = receive(product.id, 2, batch_code="LOT-A", expiry_days=-1)
    batch_service.post_movement(batch, -2, "OUT")
    db_session.commit()

    result = expiry_service.sweep()
    assert result.processed_count == 0
    assert batch_service.get_batch(batch.id).is_active is False
    assert LedgerEntry.query.filter_by(batch_id=batch.id, type="EXPIRED").count() == 0


def test_sweep_uses_given_clock(db_session, product):
    batch = receive(product.id, 5, expiry_days=3)

    assert expiry_service.sweep(now=utcnow()).processed_count == 0
    result = expiry_service.sweep(now=utcnow() + timedelta(days=4))
    assert result.batch_ids == (batch.id,)
