"""
Reconciliation tests: drift detection against the lot store and idempotent
aggregate rebuilds.
"""

import logging
from decimal import Decimal

import pytest

from lotledger.extensions import db
from lotledger.errors import DriftDetected
from lotledger.models import AggregateStock, TransactionLogEntry
from lotledger.services import lot_service, reconciliation_service

from conftest import D1, D2, cached_quantity, lot_sum


def _corrupt(product_id, quantity):
    row = db.session.get(AggregateStock, product_id)
    row.quantity = Decimal(quantity)
    db.session.commit()


def test_no_drift_after_normal_activity(product, buy, sell):
    buy(product.id, 100, 10, D1)
    sell(product.id, 30)

    report = reconciliation_service.reconcile()

    assert report.has_drift is False
    assert report.checked == 1


def test_drift_is_reported_not_corrected(product, buy, caplog):
    buy(product.id, 100, 10, D1)
    _corrupt(product.id, "90")

    with caplog.at_level(logging.WARNING):
        report = reconciliation_service.reconcile()

    assert [(e.product_id, e.cached, e.expected, e.delta) for e in report.entries] == [
        (product.id, Decimal("90"), Decimal("100"), Decimal("10"))
    ]
    assert "Stock drift" in caplog.text
    assert cached_quantity(product.id) == Decimal("90")


def test_drift_can_raise(product, buy):
    buy(product.id, 100, 10, D1)
    _corrupt(product.id, "101")

    with pytest.raises(DriftDetected) as exc:
        reconciliation_service.reconcile(raise_on_drift=True)

    assert exc.value.report.entries[0].delta == Decimal("-1")
    assert exc.value.details["drift_count"] == 1


def test_repair_rebuilds_from_lots_and_is_idempotent(product, buy, sell):
    buy(product.id, 100, 10, D1)
    buy(product.id, 50, 12, D2)
    sell(product.id, 30)
    row = db.session.get(AggregateStock, product.id)
    row.quantity = Decimal("7")
    row.weight = Decimal("1")
    row.last_unit_cost = None
    db.session.commit()
    log_count = db.session.query(TransactionLogEntry).count()

    first = reconciliation_service.repair()

    assert first.repaired is True
    assert [e.product_id for e in first.entries] == [product.id]
    row = db.session.get(AggregateStock, product.id)
    snapshot = (row.quantity, row.weight, row.last_unit_cost)
    assert snapshot == (Decimal("120"), Decimal("240"), Decimal("12"))
    assert db.session.query(TransactionLogEntry).count() == log_count

    second = reconciliation_service.repair()

    assert second.has_drift is False
    db.session.expire_all()
    row = db.session.get(AggregateStock, product.id)
    assert (row.quantity, row.weight, row.last_unit_cost) == snapshot


def test_aggregate_weight_follows_lot_weight(product, buy, sell):
    buy(product.id, 100, 10, D1)
    sell(product.id, 30)

    row = db.session.get(AggregateStock, product.id)
    assert row.weight == Decimal("140")
    assert row.last_unit_cost == Decimal("10")


def test_cancelled_lots_are_excluded(product, buy):
    _, lot = buy(product.id, 100, 10, D1)
    buy(product.id, 20, 11, D2)

    lot_service.cancel_lot(lot.id, reason="recalled")

    assert cached_quantity(product.id) == Decimal("20")
    assert lot_sum(product.id) == Decimal("20")
    assert reconciliation_service.reconcile().has_drift is False


def test_missing_aggregate_row_is_recreated(product, buy):
    buy(product.id, 100, 10, D1)
    db.session.query(AggregateStock).delete()
    db.session.commit()

    report = reconciliation_service.reconcile()
    assert report.entries[0].cached == Decimal("0")

    reconciliation_service.repair()
    assert cached_quantity(product.id) == Decimal("100")


def test_repair_can_be_scoped_to_one_product(product, other_product, buy):
    buy(product.id, 10, 10, D1)
    buy(other_product.id, 10, 10, D1)
    _corrupt(product.id, "1")
    _corrupt(other_product.id, "2")

    reconciliation_service.repair(product.id)

    assert cached_quantity(product.id) == Decimal("10")
    assert cached_quantity(other_product.id) == Decimal("2")
    remaining = reconciliation_service.reconcile()
    assert [e.product_id for e in remaining.entries] == [other_product.id]


def test_product_stock_check(product, buy):
    buy(product.id, 100, 10, D1)
    _corrupt(product.id, "99")

    check = reconciliation_service.product_stock_check(product.id)

    assert check["product_name"] == product.name
    assert check["cached_quantity"] == "99.000"
    assert check["lot_quantity"] == "100.000"
    assert check["lot_count"] == 1
