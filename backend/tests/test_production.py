"""
Production tests: costed output lots, all-or-nothing input consumption and
reversal.
"""

from decimal import Decimal

import pytest

from lotledger.extensions import db
from lotledger.errors import InsufficientLotQuantity, InvalidOperation, LotInUse, ProductionNotFound
from lotledger.models import (
    Lot,
    Product,
    ProductionInput,
    ProductionRecord,
    TradeLine,
    TradeMaster,
    TransactionLogEntry,
)
from lotledger.models.inventory import LOT_CANCELLED
from lotledger.models.ledger import LOG_IN, LOG_OUT
from lotledger.models.production import PRODUCTION_OUTPUT_REMOVED
from lotledger.models.trades import TRADE_PRODUCTION
from lotledger.services import lot_service, production_service, reconciliation_service, trade_service

from conftest import D1, D2, D3, cached_quantity


@pytest.fixture
def fillet(db_session):
    product = Product(name="Mackerel Fillet", weight=Decimal("0.500"), weight_unit="kg")
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def inputs(product, other_product, buy):
    _, lot_a = buy(product.id, 10, 10, D1)
    _, lot_b = buy(other_product.id, 5, 12, D1)
    return lot_a, lot_b


def test_output_lot_carries_weighted_cost(product, other_product, fillet, inputs, assert_conserved):
    lot_a, lot_b = inputs

    record = production_service.produce(
        [(lot_a.id, Decimal("10")), (lot_b.id, Decimal("5"))],
        fillet.id,
        Decimal("16"),
        additional_cost=Decimal("20"),
        memo="filleting run",
        production_date=D2,
    )

    # (10*10 + 5*12 + 20) / 16
    output = db.session.get(Lot, record.output_lot_id)
    assert output.unit_cost == Decimal("11.25")
    assert output.original_quantity == Decimal("16")
    assert output.acquisition_date == D2
    assert output.total_weight == Decimal("8")

    line = db.session.get(TradeLine, record.output_line_id)
    assert line.cost_basis == Decimal("11.25")
    assert line.trade.trade_type == TRADE_PRODUCTION
    assert line.trade.trade_number.startswith("PR-")

    assert db.session.get(Lot, lot_a.id).remaining_quantity == Decimal("0")
    assert db.session.get(Lot, lot_b.id).remaining_quantity == Decimal("0")
    assert sorted((i.lot_id, i.consumed_quantity) for i in record.inputs) == sorted([
        (lot_a.id, Decimal("10")),
        (lot_b.id, Decimal("5")),
    ])
    assert cached_quantity(fillet.id) == Decimal("16")
    assert db.session.get(TradeMaster, record.trade_master_id) is not None
    assert_conserved(product.id, other_product.id, fillet.id)


def test_production_log_entries(fillet, inputs):
    lot_a, lot_b = inputs

    record = production_service.produce([(lot_a.id, 4), (lot_b.id, 2)], fillet.id, 5)

    outs = db.session.query(TransactionLogEntry).filter_by(transaction_type=LOG_OUT).all()
    assert sorted(e.quantity for e in outs) == [Decimal("-4"), Decimal("-2")]
    assert all(e.line_id is None for e in outs)
    produced = db.session.query(TransactionLogEntry).filter_by(line_id=record.output_line_id).one()
    assert produced.transaction_type == LOG_IN
    assert produced.quantity == Decimal("5")


def test_short_input_fails_whole_production(product, other_product, fillet, inputs, assert_conserved):
    lot_a, lot_b = inputs

    with pytest.raises(InsufficientLotQuantity):
        production_service.produce([(lot_a.id, 5), (lot_b.id, 6)], fillet.id, 8)

    assert db.session.get(Lot, lot_a.id).remaining_quantity == Decimal("10")
    assert db.session.get(Lot, lot_b.id).remaining_quantity == Decimal("5")
    assert db.session.query(ProductionRecord).count() == 0
    assert db.session.query(TradeMaster).filter_by(trade_type=TRADE_PRODUCTION).count() == 0
    assert db.session.query(Lot).filter_by(product_id=fillet.id).count() == 0
    assert_conserved(product.id, other_product.id, fillet.id)


def test_production_input_validation(fillet, inputs):
    lot_a, _ = inputs

    with pytest.raises(InvalidOperation):
        production_service.produce([], fillet.id, 1)
    with pytest.raises(InvalidOperation):
        production_service.produce([(lot_a.id, 0)], fillet.id, 1)
    with pytest.raises(InvalidOperation):
        production_service.produce([(lot_a.id, 1)], fillet.id, 0)
    with pytest.raises(InvalidOperation):
        production_service.produce([(lot_a.id, 1)], fillet.id, 1, additional_cost=-1)


def test_duplicate_inputs_are_merged(fillet, inputs):
    lot_a, _ = inputs

    record = production_service.produce(
        [{"lot_id": lot_a.id, "quantity": "3"}, {"lot_id": lot_a.id, "quantity": "2"}],
        fillet.id,
        4,
    )

    assert db.session.query(ProductionInput).filter_by(production_id=record.id).count() == 1
    assert record.inputs[0].consumed_quantity == Decimal("5")
    assert db.session.get(Lot, lot_a.id).remaining_quantity == Decimal("5")


def test_consumed_input_lot_cannot_be_deleted(product, fillet, inputs):
    lot_a, _ = inputs
    production_service.produce([(lot_a.id, 2)], fillet.id, 2)

    with pytest.raises(LotInUse) as exc:
        trade_service.delete_line(lot_a.trade_line_id)
    assert exc.value.details["production_inputs"] == 1


def test_reverse_production_restores_inputs(product, other_product, fillet, inputs, assert_conserved):
    lot_a, lot_b = inputs
    record = production_service.produce([(lot_a.id, 10), (lot_b.id, 5)], fillet.id, 16, 20)
    record_id, output_lot_id, trade_id = record.id, record.output_lot_id, record.trade_master_id

    production_service.reverse_production(record_id)

    assert db.session.get(Lot, lot_a.id).remaining_quantity == Decimal("10")
    assert db.session.get(Lot, lot_b.id).remaining_quantity == Decimal("5")
    assert db.session.get(Lot, output_lot_id) is None
    assert db.session.get(ProductionRecord, record_id) is None
    assert db.session.get(TradeMaster, trade_id) is None
    assert cached_quantity(fillet.id) == Decimal("0")
    assert_conserved(product.id, other_product.id, fillet.id)

    with pytest.raises(ProductionNotFound):
        production_service.reverse_production(record_id)


def test_reverse_production_refused_once_output_is_sold(product, fillet, inputs, sell, assert_conserved):
    lot_a, _ = inputs
    record = production_service.produce([(lot_a.id, 10)], fillet.id, 20, production_date=D2)
    sell(fillet.id, 3, trade_date=D3)

    with pytest.raises(LotInUse):
        production_service.reverse_production(record.id)

    assert db.session.get(Lot, lot_a.id).remaining_quantity == Decimal("0")
    assert db.session.get(Lot, record.output_lot_id).remaining_quantity == Decimal("17")
    assert_conserved(product.id, fillet.id)


def test_output_line_reversal_then_production_reversal(product, fillet, inputs, assert_conserved):
    lot_a, _ = inputs
    record = production_service.produce([(lot_a.id, 6)], fillet.id, 6)
    record_id, output_line_id = record.id, record.output_line_id

    trade_service.delete_line(output_line_id)

    record = db.session.get(ProductionRecord, record_id)
    assert record.status == PRODUCTION_OUTPUT_REMOVED
    assert record.output_lot_id is None
    assert db.session.get(Lot, lot_a.id).remaining_quantity == Decimal("4")
    assert_conserved(product.id, fillet.id)

    production_service.reverse_production(record_id)

    assert db.session.get(Lot, lot_a.id).remaining_quantity == Decimal("10")
    assert_conserved(product.id, fillet.id)


def test_list_productions_newest_first(fillet, inputs):
    lot_a, _ = inputs
    first = production_service.produce([(lot_a.id, 1)], fillet.id, 1)
    second = production_service.produce([(lot_a.id, 1)], fillet.id, 1)

    ids = [r.id for r in production_service.list_productions()]
    assert ids[:2] == [second.id, first.id]


def test_reverse_production_into_cancelled_input_lot(product, fillet, inputs, assert_conserved):
    lot_a, _ = inputs
    record = production_service.produce([(lot_a.id, 4)], fillet.id, 4)
    record_id = record.id
    lot_service.cancel_lot(lot_a.id, reason="freezer failure")
    assert cached_quantity(product.id) == Decimal("0")

    production_service.reverse_production(record_id)

    lot = db.session.get(Lot, lot_a.id)
    assert lot.remaining_quantity == Decimal("10")
    assert lot.status == LOT_CANCELLED
    assert cached_quantity(product.id) == Decimal("0")
    assert_conserved(product.id, fillet.id)
    assert reconciliation_service.reconcile().has_drift is False
