"""
Return linker tests: restoration into the parent's lots, the return ceiling,
legacy excess detection and bulk auto-linking.
"""

import logging
from decimal import Decimal

import pytest

from lotledger.extensions import db
from lotledger.errors import (
    AmbiguousReturnCandidate,
    InsufficientLotQuantity,
    InvalidOperation,
    OverReturnDetected,
)
from lotledger.models import Lot, Match, TradeLine, TransactionLogEntry
from lotledger.models.inventory import MATCH_KIND_RETURN
from lotledger.models.ledger import LOG_IN
from lotledger.models.trades import MATCH_MATCHED, TRADE_CANCELLED, TRADE_PURCHASE, TRADE_SALE
from lotledger.services import production_service, return_service, trade_service

from conftest import D1, D2, D3


def _return(product_id, quantity, parent_line_id=None, unit_price=20):
    trade = trade_service.create_trade(TRADE_SALE, D3)
    return trade_service.register_sale_line(
        trade.id, product_id, Decimal(str(-abs(quantity))), Decimal(str(unit_price)),
        parent_line_id=parent_line_id,
    )["line"]


@pytest.fixture
def scenario(product, buy, sell):
    """100 @ 10 on D1, 50 @ 12 on D2, one sale of 120."""
    _, lot1 = buy(product.id, 100, 10, D1)
    _, lot2 = buy(product.id, 50, 12, D2)
    sale = sell(product.id, 120)["line"]
    return sale, lot1, lot2


def test_return_restores_most_recently_matched_lot(product, scenario, assert_conserved):
    sale, lot1, lot2 = scenario

    ret = _return(product.id, 15, parent_line_id=sale.id)

    assert ret.quantity == Decimal("-15")
    assert ret.matching_status == MATCH_MATCHED
    assert ret.cost_basis == Decimal("12")
    assert db.session.get(Lot, lot1.id).remaining_quantity == Decimal("0")
    assert db.session.get(Lot, lot2.id).remaining_quantity == Decimal("45")

    match = db.session.query(Match).filter_by(line_id=ret.id).one()
    assert match.kind == MATCH_KIND_RETURN
    assert match.lot_id == lot2.id

    entry = db.session.query(TransactionLogEntry).filter_by(line_id=ret.id).one()
    assert entry.transaction_type == LOG_IN
    assert entry.quantity == Decimal("15")

    assert return_service.compute_return_excess(sale.id) == Decimal("-105")
    assert_conserved(product.id)


def test_return_spills_into_older_lots(product, scenario, assert_conserved):
    sale, lot1, lot2 = scenario

    _return(product.id, 50, parent_line_id=sale.id)

    assert db.session.get(Lot, lot2.id).remaining_quantity == Decimal("50")
    assert db.session.get(Lot, lot1.id).remaining_quantity == Decimal("30")
    assert_conserved(product.id)


def test_return_ceiling_is_enforced(product, scenario, assert_conserved):
    sale, lot1, lot2 = scenario
    _return(product.id, 15, parent_line_id=sale.id)

    with pytest.raises(OverReturnDetected) as exc:
        _return(product.id, 110, parent_line_id=sale.id)

    assert exc.value.details["excess"] == "5.000"
    assert return_service.returned_quantity(sale.id) == Decimal("15")
    assert db.session.query(TradeLine).filter(TradeLine.quantity == Decimal("-110")).count() == 0
    assert_conserved(product.id)


def test_exact_full_return_is_allowed(product, scenario):
    sale, _, _ = scenario

    _return(product.id, 120, parent_line_id=sale.id)

    assert return_service.compute_return_excess(sale.id) == Decimal("0")


def test_legacy_unlinked_return_excess_is_reported(product, buy, sell, caplog, assert_conserved):
    _, lot1 = buy(product.id, 100, 10, D1)
    _, lot2 = buy(product.id, 50, 12, D2)
    sale1 = sell(product.id, 100)["line"]
    sell(product.id, 30)

    # Unlinked: goes back into the newest consumed lots first
    ret = _return(product.id, 105)
    assert db.session.get(Lot, lot2.id).remaining_quantity == Decimal("50")
    assert db.session.get(Lot, lot1.id).remaining_quantity == Decimal("75")
    assert_conserved(product.id)

    with pytest.raises(OverReturnDetected):
        return_service.link_return(ret.id, sale1.id)
    assert db.session.get(TradeLine, ret.id).parent_line_id is None

    return_service.link_return(ret.id, sale1.id, enforce_ceiling=False)
    assert return_service.compute_return_excess(sale1.id) == Decimal("5")

    with caplog.at_level(logging.WARNING):
        over = return_service.find_over_returns()
    assert len(over) == 1
    assert over[0]["sale_line_id"] == sale1.id
    assert over[0]["excess"] == "5.000"
    assert "Over-return" in caplog.text


def test_no_over_returns_on_clean_data(product, scenario):
    sale, _, _ = scenario
    _return(product.id, 10, parent_line_id=sale.id)
    assert return_service.find_over_returns() == []


def test_link_validation(product, other_product, buy, sell, scenario):
    sale, _, _ = scenario
    purchase_line, _ = buy(product.id, 10, 10, D1)
    ret = _return(product.id, 5)

    with pytest.raises(InvalidOperation):
        return_service.link_return(ret.id, purchase_line.id)
    with pytest.raises(InvalidOperation):
        return_service.link_return(sale.id, sale.id)

    buy(other_product.id, 10, 5, D1)
    other_sale = sell(other_product.id, 5)["line"]
    with pytest.raises(InvalidOperation):
        return_service.link_return(ret.id, other_sale.id)

    return_service.link_return(ret.id, sale.id)
    second_sale = sell(product.id, 5)["line"]
    with pytest.raises(InvalidOperation):
        return_service.link_return(ret.id, second_sale.id)


def test_customer_return_on_purchase_trade_is_rejected(product, scenario):
    trade = trade_service.create_trade(TRADE_PURCHASE, D3)
    with pytest.raises(InvalidOperation):
        return_service.register_return(trade.id, product.id, Decimal("5"))


def test_register_return_accepts_positive_quantity(product, scenario):
    sale, _, lot2 = scenario
    trade = trade_service.create_trade(TRADE_SALE, D3)

    line = return_service.register_return(trade.id, product.id, Decimal("5"), parent_line_id=sale.id)

    assert line.quantity == Decimal("-5")
    assert db.session.get(Lot, lot2.id).remaining_quantity == Decimal("35")


def test_return_cannot_exceed_what_lots_can_take_back(product, buy, sell):
    buy(product.id, 10, 10, D1)
    sell(product.id, 4)

    with pytest.raises(InvalidOperation):
        _return(product.id, 6)


def test_unlinked_return_only_refills_sold_stock(product, other_product, buy, sell, assert_conserved):
    _, lot = buy(product.id, 10, 10, D1)
    sell(product.id, 4)
    record = production_service.produce([(lot.id, 6)], other_product.id, 6, production_date=D2)

    _return(product.id, 3)
    assert db.session.get(Lot, lot.id).remaining_quantity == Decimal("3")

    # One sold unit is left to return; the produced six are not
    with pytest.raises(InvalidOperation):
        _return(product.id, 2)

    production_service.reverse_production(record.id)

    assert db.session.get(Lot, lot.id).remaining_quantity == Decimal("9")
    assert_conserved(product.id, other_product.id)


def test_unlinked_return_with_nothing_sold_is_rejected(product, other_product, buy, assert_conserved):
    _, lot = buy(product.id, 10, 10, D1)
    record = production_service.produce([(lot.id, 10)], other_product.id, 10)

    with pytest.raises(InvalidOperation):
        _return(product.id, 3)

    assert db.session.get(Lot, lot.id).remaining_quantity == Decimal("0")
    production_service.reverse_production(record.id)
    assert db.session.get(Lot, lot.id).remaining_quantity == Decimal("10")
    assert_conserved(product.id, other_product.id)


def test_reversing_a_return_takes_stock_back_out(product, scenario, assert_conserved):
    sale, _, lot2 = scenario
    ret = _return(product.id, 15, parent_line_id=sale.id)

    trade_service.delete_line(ret.id)

    assert db.session.get(Lot, lot2.id).remaining_quantity == Decimal("30")
    assert return_service.compute_return_excess(sale.id) == Decimal("-120")
    assert_conserved(product.id)


def test_return_reversal_fails_once_stock_is_resold(product, buy, sell, assert_conserved):
    _, lot = buy(product.id, 10, 10, D1)
    sale = sell(product.id, 10)["line"]
    ret = _return(product.id, 4, parent_line_id=sale.id)
    sell(product.id, 4)

    with pytest.raises(InsufficientLotQuantity):
        trade_service.delete_line(ret.id)

    assert db.session.get(TradeLine, ret.id) is not None
    assert db.session.get(Lot, lot.id).remaining_quantity == Decimal("0")
    assert_conserved(product.id)


def test_auto_link_links_unique_candidate(product, buy, sell):
    buy(product.id, 100, 10, D1)
    sale = sell(product.id, 30)["line"]
    ret = _return(product.id, 10)

    report = return_service.auto_link_returns()

    assert report.linked == [{"return_line_id": ret.id, "sale_line_id": sale.id}]
    assert report.ambiguous == []
    assert db.session.get(TradeLine, ret.id).parent_line_id == sale.id


def test_auto_link_dry_run_changes_nothing(product, buy, sell):
    buy(product.id, 100, 10, D1)
    sell(product.id, 30)
    ret = _return(product.id, 10)

    report = return_service.auto_link_returns(dry_run=True)

    assert report.dry_run is True
    assert len(report.linked) == 1
    assert db.session.get(TradeLine, ret.id).parent_line_id is None


def test_auto_link_reports_ambiguous_and_unmatched(product, other_product, buy, sell, caplog):
    buy(product.id, 100, 10, D1)
    first = sell(product.id, 30)["line"]
    second = sell(product.id, 20)["line"]
    ambiguous = _return(product.id, 10)

    # Its only candidate sale sits on a voided invoice
    buy(other_product.id, 100, 5, D1)
    voided = sell(other_product.id, 10)["line"]
    orphan = _return(other_product.id, 5)
    voided.trade.status = TRADE_CANCELLED
    db.session.commit()

    with caplog.at_level(logging.WARNING):
        report = return_service.auto_link_returns()

    assert report.linked == []
    assert report.ambiguous == [{"return_line_id": ambiguous.id, "candidates": [first.id, second.id]}]
    assert report.unmatched == [orphan.id]
    assert "Ambiguous return" in caplog.text
    assert db.session.get(TradeLine, ambiguous.id).parent_line_id is None


def test_auto_link_single_line(product, buy, sell):
    buy(product.id, 100, 10, D1)
    first = sell(product.id, 30)["line"]
    sell(product.id, 20)
    ret = _return(product.id, 10)

    with pytest.raises(AmbiguousReturnCandidate) as exc:
        return_service.auto_link_return(ret.id)
    assert exc.value.details["candidates"][0] == first.id

    with pytest.raises(InvalidOperation):
        return_service.auto_link_return(first.id)
