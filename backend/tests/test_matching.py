"""
Matching engine tests: FIFO allocation, strict vs backorder, cost basis,
manual matching and cancelling a match.
"""

import logging
from decimal import Decimal

import pytest

from lotledger.extensions import db
from lotledger.errors import AlreadyMatched, InsufficientStock, InvalidOperation, ProductNotFound
from lotledger.models import Lot, Match, TradeLine, TransactionLogEntry
from lotledger.models.inventory import LOT_AVAILABLE, LOT_DEPLETED
from lotledger.models.ledger import LOG_ADJUST, LOG_OUT
from lotledger.models.trades import MATCH_MATCHED, MATCH_PARTIAL, MATCH_PENDING, TRADE_SALE
from lotledger.services import matching_service, return_service, trade_service

from conftest import D1, D2, cached_quantity


def test_scenario_sale_spans_two_lots(product, buy, sell, assert_conserved):
    _, lot1 = buy(product.id, 100, 10, D1)
    _, lot2 = buy(product.id, 50, 12, D2)

    result = sell(product.id, 120)
    line = result["line"]

    matches = sorted(result["matches"], key=lambda m: m.id)
    assert [(m.lot_id, m.matched_quantity) for m in matches] == [
        (lot1.id, Decimal("100")),
        (lot2.id, Decimal("20")),
    ]
    assert result["matching_status"] == MATCH_MATCHED
    assert result["partial"] is False
    assert line.cost_basis.quantize(Decimal("0.01")) == Decimal("10.33")
    assert line.cost_basis_missing is False

    lot1 = db.session.get(Lot, lot1.id)
    lot2 = db.session.get(Lot, lot2.id)
    assert lot1.remaining_quantity == Decimal("0")
    assert lot1.status == LOT_DEPLETED
    assert lot2.remaining_quantity == Decimal("30")
    assert_conserved(product.id)


def test_sale_writes_one_out_entry(product, buy, sell):
    buy(product.id, 100, 10, D1)
    buy(product.id, 50, 12, D2)
    line_id = sell(product.id, 120)["line"].id

    entries = db.session.query(TransactionLogEntry).filter_by(line_id=line_id).all()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.transaction_type == LOG_OUT
    assert entry.quantity == Decimal("-120")
    assert entry.before_quantity == Decimal("150")
    assert entry.after_quantity == Decimal("30")
    # 2 kg per unit on both lots
    assert entry.weight == Decimal("-240")


def test_fifo_consumes_oldest_date_first_regardless_of_entry_order(product, buy, sell):
    _, newer = buy(product.id, 50, 12, D2)
    _, older = buy(product.id, 50, 10, D1)

    sell(product.id, 60)

    assert db.session.get(Lot, older.id).remaining_quantity == Decimal("0")
    assert db.session.get(Lot, newer.id).remaining_quantity == Decimal("40")


def test_same_date_lots_consumed_in_insertion_order(product, buy, sell):
    _, first = buy(product.id, 10, 10, D1)
    _, second = buy(product.id, 10, 11, D1)

    sell(product.id, 15)

    assert db.session.get(Lot, first.id).remaining_quantity == Decimal("0")
    assert db.session.get(Lot, second.id).remaining_quantity == Decimal("5")


def test_strict_oversell_is_rejected_atomically(product, buy, sell, assert_conserved):
    _, lot1 = buy(product.id, 100, 10, D1)
    _, lot2 = buy(product.id, 50, 12, D2)

    with pytest.raises(InsufficientStock) as exc:
        sell(product.id, 151)

    assert exc.value.details["available"] == "150.000"
    assert db.session.get(Lot, lot1.id).remaining_quantity == Decimal("100")
    assert db.session.get(Lot, lot2.id).remaining_quantity == Decimal("50")
    assert db.session.query(Match).count() == 0
    assert db.session.query(TradeLine).filter(TradeLine.quantity == Decimal("151")).count() == 0
    assert_conserved(product.id)


def test_backorder_leaves_line_partial_and_can_be_completed(product, buy, sell, caplog, assert_conserved):
    buy(product.id, 100, 10, D1)

    with caplog.at_level(logging.WARNING):
        result = sell(product.id, 150, allow_backorder=True)

    line_id = result["line"].id
    assert result["partial"] is True
    assert result["matching_status"] == MATCH_PARTIAL
    assert result["cost_basis"] == Decimal("10")
    assert "Backorder" in caplog.text
    assert cached_quantity(product.id) == Decimal("0")

    buy(product.id, 80, 12, D2)
    completed = matching_service.allocate(line_id)

    assert completed.matched_quantity == Decimal("50")
    assert completed.partial is False
    assert completed.matching_status == MATCH_MATCHED
    # (100*10 + 50*12) / 150
    assert completed.cost_basis == Decimal("10.6667")
    assert_conserved(product.id)


def test_backorder_with_no_stock_flags_missing_cost(product, sell):
    result = sell(product.id, 5, allow_backorder=True)
    line = db.session.get(TradeLine, result["line"].id)

    assert line.matching_status == MATCH_PENDING
    assert line.cost_basis is None
    assert line.cost_basis_missing is True


def test_backorder_default_comes_from_config(app, product, buy, sell):
    buy(product.id, 10, 10, D1)
    app.config["LEDGER_ALLOW_BACKORDER"] = True
    try:
        result = sell(product.id, 12)
    finally:
        app.config["LEDGER_ALLOW_BACKORDER"] = False
    assert result["matching_status"] == MATCH_PARTIAL


def test_allocating_a_matched_line_is_rejected(product, buy, sell):
    buy(product.id, 10, 10, D1)
    line_id = sell(product.id, 5)["line"].id

    with pytest.raises(AlreadyMatched):
        matching_service.allocate(line_id)


def test_unknown_product_is_rejected(db_session, sell):
    with pytest.raises(ProductNotFound):
        sell(987654, 1)


def test_purchase_line_cannot_be_allocated(product, buy):
    line, _ = buy(product.id, 10, 10, D1)
    with pytest.raises(InvalidOperation):
        matching_service.allocate(line.id)


def test_manual_matching_takes_chosen_lots(product, buy, sell, assert_conserved):
    line_id = sell(product.id, 30, allow_backorder=True)["line"].id
    _, lot1 = buy(product.id, 100, 10, D1)
    _, lot2 = buy(product.id, 50, 12, D2)

    result = matching_service.allocate_manual(line_id, [(lot2.id, Decimal("30"))], actor="lee")

    assert result.matching_status == MATCH_MATCHED
    assert result.cost_basis == Decimal("12")
    assert db.session.get(Lot, lot1.id).remaining_quantity == Decimal("100")
    assert db.session.get(Lot, lot2.id).remaining_quantity == Decimal("20")
    assert db.session.query(Match).filter_by(line_id=line_id).one().actor == "lee"
    assert_conserved(product.id)


def test_manual_matching_validates_selection(product, other_product, buy, sell):
    line_id = sell(product.id, 30, allow_backorder=True)["line"].id
    _, lot = buy(product.id, 100, 10, D1)
    _, foreign = buy(other_product.id, 100, 10, D1)

    with pytest.raises(InvalidOperation):
        matching_service.allocate_manual(line_id, [(lot.id, Decimal("31"))])
    with pytest.raises(InvalidOperation):
        matching_service.allocate_manual(line_id, [(foreign.id, Decimal("5"))])

    assert db.session.get(Lot, lot.id).remaining_quantity == Decimal("100")
    assert db.session.query(Match).filter_by(line_id=line_id).count() == 0


def test_unmatch_restores_lots_and_resets_line(product, buy, sell, assert_conserved):
    _, lot = buy(product.id, 100, 10, D1)
    line_id = sell(product.id, 40)["line"].id

    line = matching_service.unmatch(line_id, actor="park")

    assert line.matching_status == MATCH_PENDING
    assert line.cost_basis is None
    assert line.cost_basis_missing is True
    assert db.session.get(Lot, lot.id).remaining_quantity == Decimal("100")
    assert db.session.get(Lot, lot.id).status == LOT_AVAILABLE
    assert db.session.query(Match).filter_by(line_id=line_id).count() == 0

    restore = db.session.query(TransactionLogEntry).filter_by(transaction_type=LOG_ADJUST).one()
    assert restore.quantity == Decimal("40")
    assert restore.actor == "park"
    assert_conserved(product.id)

    again = matching_service.allocate(line_id)
    assert again.matching_status == MATCH_MATCHED
    assert_conserved(product.id)


def test_unmatch_without_matches_is_rejected(product, sell):
    line_id = sell(product.id, 5, allow_backorder=True)["line"].id
    with pytest.raises(InvalidOperation):
        matching_service.unmatch(line_id)


def test_unmatch_refused_while_returns_are_linked(product, buy, sell, assert_conserved):
    _, lot = buy(product.id, 100, 10, D1)
    line_id = sell(product.id, 40)["line"].id
    trade = trade_service.create_trade(TRADE_SALE, D2)
    ret = return_service.register_return(trade.id, product.id, Decimal("10"), parent_line_id=line_id)

    with pytest.raises(InvalidOperation) as exc:
        matching_service.unmatch(line_id)

    assert exc.value.details["return_line_ids"] == [ret.id]
    assert db.session.get(Lot, lot.id).remaining_quantity == Decimal("70")
    assert db.session.query(Match).filter_by(line_id=line_id).count() == 1
    assert_conserved(product.id)


def test_matching_status_summary(product, buy, sell):
    buy(product.id, 10, 10, D1)
    sell(product.id, 4)
    sell(product.id, 10, allow_backorder=True)
    sell(product.id, 3, allow_backorder=True)

    summary = matching_service.matching_status_summary()
    assert summary == {MATCH_PENDING: 1, MATCH_PARTIAL: 1, MATCH_MATCHED: 1}


def test_allocation_result_serializes(product, buy, sell):
    buy(product.id, 10, 10, D1)
    line_id = sell(product.id, 12, allow_backorder=True)["line"].id
    buy(product.id, 10, 10, D2)

    data = matching_service.allocate(line_id).to_dict()
    assert data["matching_status"] == MATCH_MATCHED
    assert data["matched_quantity"] == "2.000"
    assert data["shortage"] == "0.000"
    assert len(data["matches"]) == 1
