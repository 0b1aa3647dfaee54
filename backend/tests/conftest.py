"""
Pytest fixtures for lot ledger tests.

Provides the application (in-memory SQLite), a clean database per test,
master data fixtures, and small helpers for registering trades.
"""

from datetime import date
from decimal import Decimal

import pytest

from lotledger import create_app
from lotledger.extensions import db
from lotledger.models import AggregateStock, Company, Lot, Product, Warehouse
from lotledger.models.inventory import LOT_CANCELLED
from lotledger.models.trades import TRADE_PURCHASE, TRADE_SALE
from lotledger.services import trade_service


D1 = date(2026, 1, 5)
D2 = date(2026, 1, 12)
D3 = date(2026, 1, 19)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_RETRY_BACKOFF': 0,
        'LEDGER_ALLOW_BACKORDER': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def company(db_session):
    company = Company(name="Hanil Trading")
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture(scope='function')
def warehouse(db_session):
    warehouse = Warehouse(name="Busan Cold Storage")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def product(db_session):
    """Product with a unit weight of 2 kg."""
    product = Product(name="Frozen Mackerel 10kg", grade="A", weight=Decimal("2.000"), weight_unit="kg")
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def other_product(db_session):
    product = Product(name="Frozen Squid 5kg", grade="B", weight=Decimal("1.000"), weight_unit="kg")
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def buy(db_session, company, warehouse):
    """Register a one-line purchase: buy(product_id, qty, unit_cost, trade_date) -> (line, lot)."""
    def _buy(product_id, quantity, unit_cost, trade_date=D1, **fields):
        trade = trade_service.create_trade(
            TRADE_PURCHASE, trade_date, company_id=company.id, warehouse_id=warehouse.id,
        )
        return trade_service.register_purchase_line(
            trade.id, product_id, Decimal(str(quantity)), Decimal(str(unit_cost)), **fields
        )
    return _buy


@pytest.fixture(scope='function')
def sell(db_session, company):
    """Register a one-line sale: sell(product_id, qty, ...) -> result dict."""
    def _sell(product_id, quantity, unit_price=20, trade_date=D3, **kwargs):
        trade = trade_service.create_trade(TRADE_SALE, trade_date, company_id=company.id)
        return trade_service.register_sale_line(
            trade.id, product_id, Decimal(str(quantity)), Decimal(str(unit_price)), **kwargs
        )
    return _sell


def lot_sum(product_id) -> Decimal:
    """SUM(remaining) over non-cancelled lots, straight from the table."""
    lots = db.session.query(Lot).filter(Lot.product_id == product_id, Lot.status != LOT_CANCELLED).all()
    return sum((lot.remaining_quantity for lot in lots), Decimal("0"))


def cached_quantity(product_id) -> Decimal:
    row = db.session.get(AggregateStock, product_id)
    return row.quantity if row is not None else Decimal("0")


@pytest.fixture
def assert_conserved(db_session):
    """Assert aggregate quantity equals the lot sum for the given products."""
    def _check(*product_ids):
        db_session.expire_all()
        for product_id in product_ids:
            assert cached_quantity(product_id) == lot_sum(product_id)
    return _check
