# Overview: Reconciliation job; compares the aggregate cache with lot sums and rebuilds it on demand.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import AggregateStock, Lot, Product
from ..models.inventory import LOT_CANCELLED
from ..errors import DriftDetected
from ..decimal_utils import ZERO, quantize_quantity, to_decimal, to_json_decimal
from ..time_utils import utcnow
from .concurrency import lock_table, run_with_retry
from .stock_service import get_stock
"""
Reconciliation Invariants (authoritative)

- Expected quantity = SUM(remaining_quantity) over lots with status != CANCELLED.
- Expected weight = SUM(total_weight * remaining / original) over the same lots.
- Drift is reported, never corrected, unless repair() is called explicitly.
- repair() holds a table-level lock on aggregate_stock for the whole rebuild and
  is idempotent: running it twice yields the same rows.
- repair() writes no transaction log rows; the log records movements, and a
  rebuild is not one.
"""


@dataclass(frozen=True)
class DriftEntry:
    product_id: int
    cached: Decimal
    expected: Decimal

    @property
    def delta(self) -> Decimal:
        return quantize_quantity(self.expected - self.cached)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "cached": to_json_decimal(self.cached),
            "expected": to_json_decimal(self.expected),
            "delta": to_json_decimal(self.delta),
        }


@dataclass
class DriftReport:
    entries: list[DriftEntry] = field(default_factory=list)
    checked: int = 0
    repaired: bool = False

    @property
    def has_drift(self) -> bool:
        return bool(self.entries)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "drift_count": len(self.entries),
            "entries": [e.to_dict() for e in self.entries],
            "repaired": self.repaired,
        }


def _lot_totals(product_id: int | None = None) -> dict[int, dict]:
    """Per-product expected quantity and weight from non-cancelled lots."""
    q = db.session.query(Lot).filter(Lot.status != LOT_CANCELLED)
    if product_id is not None:
        q = q.filter(Lot.product_id == product_id)

    totals: dict[int, dict] = {}
    for lot in q.all():
        bucket = totals.setdefault(lot.product_id, {"quantity": ZERO, "weight": ZERO})
        bucket["quantity"] += to_decimal(lot.remaining_quantity)
        bucket["weight"] += lot.remaining_weight
    return totals


def _latest_unit_costs(product_id: int | None = None) -> dict[int, Decimal]:
    """Unit cost of the newest non-cancelled lot per product."""
    q = db.session.query(Lot).filter(Lot.status != LOT_CANCELLED)
    if product_id is not None:
        q = q.filter(Lot.product_id == product_id)
    costs: dict[int, Decimal] = {}
    rows = q.order_by(Lot.acquisition_date.asc(), Lot.display_order.asc(), Lot.id.asc()).all()
    for lot in rows:
        costs[lot.product_id] = to_decimal(lot.unit_cost)
    return costs


def _product_scope(product_id: int | None, totals: dict, cached: dict) -> list[int]:
    if product_id is not None:
        return [product_id]
    return sorted(set(totals) | set(cached))


def _find_drift(product_id: int | None = None) -> DriftReport:
    totals = _lot_totals(product_id)
    q = db.session.query(AggregateStock)
    if product_id is not None:
        q = q.filter(AggregateStock.product_id == product_id)
    cached = {row.product_id: to_decimal(row.quantity) for row in q.all()}

    report = DriftReport()
    for pid in _product_scope(product_id, totals, cached):
        report.checked += 1
        expected = quantize_quantity(totals.get(pid, {}).get("quantity", ZERO))
        current = quantize_quantity(cached.get(pid, ZERO))
        if expected != current:
            report.entries.append(DriftEntry(product_id=pid, cached=current, expected=expected))
    return report


def reconcile(product_id: int | None = None, *, raise_on_drift: bool = False) -> DriftReport:
    """
    Compare cached quantities with lot sums; read-only.

    Each drift is logged at WARNING. raise_on_drift=True turns a non-empty
    report into DriftDetected, which carries the report.
    """
    report = _find_drift(product_id)
    for entry in report.entries:
        current_app.logger.warning(
            "Stock drift for product %s: cached %s, lots %s (delta %s)",
            entry.product_id, entry.cached, entry.expected, entry.delta,
        )
    if raise_on_drift and report.has_drift:
        raise DriftDetected(
            f"Aggregate stock drifted from lots for {len(report.entries)} product(s)",
            report=report,
        )
    return report


def repair(product_id: int | None = None) -> DriftReport:
    """
    Rebuild aggregate rows in scope from the lot store.

    Returns the drift that was found before the rebuild, marked repaired.
    """
    def _op():
        lock_table(AggregateStock)
        report = _find_drift(product_id)

        q = db.session.query(AggregateStock)
        if product_id is not None:
            q = q.filter(AggregateStock.product_id == product_id)
        q.update(
            {
                AggregateStock.quantity: ZERO,
                AggregateStock.weight: ZERO,
                AggregateStock.last_unit_cost: None,
            },
            synchronize_session=False,
        )
        db.session.expire_all()

        totals = _lot_totals(product_id)
        costs = _latest_unit_costs(product_id)
        now = utcnow()
        for pid, bucket in totals.items():
            row = db.session.get(AggregateStock, pid)
            if row is None:
                row = AggregateStock(product_id=pid)
                db.session.add(row)
            row.quantity = quantize_quantity(bucket["quantity"])
            row.weight = quantize_quantity(bucket["weight"])
            row.last_unit_cost = costs.get(pid)
            row.updated_at = now

        report.repaired = True
        db.session.commit()
        return report

    report = run_with_retry(_op)
    if report.has_drift:
        current_app.logger.warning(
            "Rebuilt aggregate stock; corrected drift for products %s",
            [e.product_id for e in report.entries],
        )
    else:
        current_app.logger.info("Rebuilt aggregate stock; no drift found")
    return report


def product_stock_check(product_id: int) -> dict:
    """Cached vs lot-derived figures for one product, for display."""
    product = db.session.get(Product, product_id)
    totals = _lot_totals(product_id).get(product_id, {"quantity": ZERO, "weight": ZERO})
    row = get_stock(product_id)
    lot_count = (
        db.session.query(func.count(Lot.id))
        .filter(Lot.product_id == product_id, Lot.status != LOT_CANCELLED)
        .scalar()
    )
    return {
        "product_id": product_id,
        "product_name": product.name if product else None,
        "cached_quantity": to_json_decimal(to_decimal(row.quantity) if row else ZERO),
        "lot_quantity": to_json_decimal(quantize_quantity(totals["quantity"])),
        "cached_weight": to_json_decimal(to_decimal(row.weight) if row else ZERO),
        "lot_weight": to_json_decimal(quantize_quantity(totals["weight"])),
        "lot_count": int(lot_count or 0),
    }
