# Overview: Service-layer operations for the aggregate stock cache.

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from ..extensions import db
from ..models import AggregateStock, Product
from ..decimal_utils import ZERO, quantize_quantity, to_decimal
from ..time_utils import utcnow
from .concurrency import lock_for_update
from .ledger_service import append_log
"""
Aggregate Cache Invariants (authoritative)

- One row per product: quantity, weight, last unit cost.
- Derived from the lot store: quantity == SUM(remaining_quantity) over
  non-cancelled lots. The reconciliation job can rebuild it at any time.
- Display paths only. Allocation and reversal consult lots directly.
- Every change goes through post_movement() so the cache and the transaction
  log move together inside the caller's DB transaction.
"""


def apply_delta(
    product_id: int,
    quantity_delta,
    weight_delta=ZERO,
    *,
    unit_cost=None,
) -> tuple[Decimal, Decimal]:
    """Apply a signed change under a row lock. Returns (before, after) quantity."""
    row = lock_for_update(
        db.session.query(AggregateStock).filter_by(product_id=product_id)
    ).first()
    if row is None:
        row = AggregateStock(product_id=product_id, quantity=ZERO, weight=ZERO)
        db.session.add(row)

    before = to_decimal(row.quantity)
    row.quantity = quantize_quantity(before + to_decimal(quantity_delta))
    row.weight = quantize_quantity(to_decimal(row.weight) + to_decimal(weight_delta))
    if unit_cost is not None:
        row.last_unit_cost = unit_cost
    row.updated_at = utcnow()
    db.session.flush()
    return before, to_decimal(row.quantity)


def post_movement(
    *,
    transaction_type: str,
    product_id: int,
    quantity_delta,
    weight_delta=ZERO,
    line_id: int | None = None,
    reference_number: str | None = None,
    unit_price=None,
    unit_cost=None,
    actor: str | None = None,
    note: Optional[str] = None,
    transaction_date: Optional[date] = None,
):
    """Update the aggregate and append the matching log entry."""
    before, after = apply_delta(
        product_id,
        quantity_delta,
        weight_delta,
        unit_cost=unit_cost,
    )
    return append_log(
        transaction_type=transaction_type,
        product_id=product_id,
        quantity=quantity_delta,
        weight=weight_delta,
        before_quantity=before,
        after_quantity=after,
        line_id=line_id,
        reference_number=reference_number,
        unit_price=unit_price,
        actor=actor,
        note=note,
        transaction_date=transaction_date,
    )


def get_stock(product_id: int) -> AggregateStock | None:
    return db.session.query(AggregateStock).filter_by(product_id=product_id).first()


def stock_summary() -> list[dict]:
    """Cached per-product totals joined with product names, for display."""
    rows = (
        db.session.query(AggregateStock, Product)
        .join(Product, Product.id == AggregateStock.product_id)
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )
    result = []
    for stock, product in rows:
        item = stock.to_dict()
        item["product_name"] = product.name
        item["weight_unit"] = product.weight_unit
        result.append(item)
    return result
