"""
Allocation engine tests: FEFO ordering, FIFO tie-break, shortfall and determinism.
"""

from datetime import datetime, timedelta

import pytest

from posledger.errors import InvalidQuantity
from posledger.models import StockBatch
from posledger.services.allocation_service import allocate, plan_allocation

from conftest import receive


def _batch(batch_id, quantity, expiry=None, created=None):
    return StockBatch(
        id=batch_id,
        product_id=1,
        quantity=quantity,
        expiry_date=expiry,
        is_active=True,
        created_at=created or datetime(2026, 1, 1),
    )


def _pairs(plan):
    return [(a.batch_id, a.quantity) for a in plan.allocations]


def test_fefo_takes_soonest_expiry_first():
    d1 = datetime(2026, 11, 1)
    b1 = _batch(1, 5, expiry=d1)
    b2 = _batch(2, 5, expiry=d1 + timedelta(days=7))

    plan = plan_allocation([b2, b1], 7)
    assert _pairs(plan) == [(1, 5), (2, 2)]
    assert plan.shortfall == 0
    assert plan.is_complete


def test_batches_without_expiry_go_last():
    no_expiry = _batch(1, 5, expiry=None, created=datetime(2025, 1, 1))
    expiring = _batch(2, 5, expiry=datetime(2027, 1, 1))

    plan = plan_allocation([no_expiry, expiring], 6)
    assert _pairs(plan) == [(2, 5), (1, 1)]


def test_equal_expiry_falls_back_to_oldest_batch():
    expiry = datetime(2026, 12, 1)
    newer = _batch(1, 5, expiry=expiry, created=datetime(2026, 3, 1))
    older = _batch(2, 5, expiry=expiry, created=datetime(2026, 2, 1))

    plan = plan_allocation([newer, older], 3)
    assert _pairs(plan) == [(2, 3)]


def test_full_ties_resolve_by_id_and_are_deterministic():
    batches = [_batch(i, 1) for i in (5, 3, 9, 1)]
    first = plan_allocation(batches, 3)
    second = plan_allocation(list(reversed(batches)), 3)

    assert _pairs(first) == [(1, 1), (3, 1), (5, 1)]
    assert _pairs(first) == _pairs(second)


def test_shortfall_reported_not_raised():
    plan = plan_allocation([_batch(1, 2), _batch(2, 1)], 5)
    assert plan.allocated == 3
    assert plan.shortfall == 2
    assert not plan.is_complete


def test_empty_and_inactive_batches_are_skipped():
    empty = _batch(1, 0)
    inactive = _batch(2, 4)
    inactive.is_active = False
    live = _batch(3, 4)

    plan = plan_allocation([empty, inactive, live], 2)
    assert _pairs(plan) == [(3, 2)]


@pytest.mark.parametrize("requested", [0, -1, None])
def test_non_positive_request_rejected(requested):
    with pytest.raises(InvalidQuantity):
        plan_allocation([_batch(1, 5)], requested)


def test_allocate_splits_across_stored_batches(db_session, product):
    b1 = receive(product.id, 2, expiry_days=1)
    b2 = receive(product.id, 2, expiry_days=7)

    plan = allocate(product.id, 3)
    assert _pairs(plan) == [(b1.id, 2), (b2.id, 1)]
    assert plan.shortfall == 0


def test_allocate_is_pure(db_session, product):
    batch = receive(product.id, 4)
    allocate(product.id, 3)
    allocate(product.id, 3)
    db_session.expire_all()
    assert db_session.get(StockBatch, batch.id).quantity == 4


def test_allocate_ignores_expired_stock(db_session, product):
    receive(product.id, 10, expiry_days=-2)
    fresh = receive(product.id, 1, expiry_days=2)

    plan = allocate(product.id, 3)
    assert _pairs(plan) == [(fresh.id, 1)]
    assert plan.shortfall == 2
