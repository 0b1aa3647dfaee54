"""
Tests for the `flask ledger` command group.
"""

from decimal import Decimal

import pytest

from lotledger.extensions import db
from lotledger.models import AggregateStock

from conftest import D1, cached_quantity


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def _drift(product_id):
    db.session.get(AggregateStock, product_id).quantity = Decimal("3")
    db.session.commit()


def test_init_db(runner, db_session):
    result = runner.invoke(args=["ledger", "init-db"])
    assert result.exit_code == 0
    assert "Ledger tables created." in result.output


def test_reconcile_clean(runner, product, buy):
    buy(product.id, 10, 10, D1)

    result = runner.invoke(args=["ledger", "reconcile"])

    assert result.exit_code == 0
    assert "Checked 1 product(s); 0 drifted." in result.output


def test_reconcile_reports_drift(runner, product, buy):
    buy(product.id, 10, 10, D1)
    _drift(product.id)

    result = runner.invoke(args=["ledger", "reconcile", "--product-id", str(product.id)])
    assert result.exit_code == 0
    assert "1 drifted" in result.output
    assert f"product {product.id}: cached 3.000, lots 10.000, delta 7.000" in result.output

    result = runner.invoke(args=["ledger", "reconcile", "--fail-on-drift"])
    assert result.exit_code == 1
    assert "drifted from lots" in result.output


def test_repair(runner, product, buy):
    buy(product.id, 10, 10, D1)
    _drift(product.id)

    result = runner.invoke(args=["ledger", "repair"])

    assert result.exit_code == 0
    assert "Aggregate stock rebuilt." in result.output
    db.session.expire_all()
    assert cached_quantity(product.id) == Decimal("10")


def test_link_returns_dry_run_and_over_returns(runner, product, buy, sell):
    buy(product.id, 100, 10, D1)
    sale = sell(product.id, 30)["line"]
    ret = sell(product.id, -10)["line"]

    result = runner.invoke(args=["ledger", "link-returns", "--dry-run"])
    assert result.exit_code == 0
    assert f"Would link return {ret.id} -> sale {sale.id}" in result.output
    assert "1 linked, 0 ambiguous, 0 unmatched." in result.output

    result = runner.invoke(args=["ledger", "over-returns"])
    assert result.exit_code == 0
    assert "No over-returned sale lines." in result.output
