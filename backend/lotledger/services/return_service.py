"""
Return Linker

WHY: A customer return puts stock back on the shelf and reduces the sale it
belongs to. The stock has to go back into the lots that sale actually
consumed (so cost follows the goods), and the returns against one sale can
never add up to more than was sold.

DESIGN PRINCIPLES:
- A return is a negative-quantity sale line; parent_line_id points at the
  positive sale line it reduces.
- Restoration walks the parent's matched lots, most recently matched first,
  and records RETURN-kind matches so the return can be reversed exactly.
- The return ceiling is enforced at write time. Legacy data that already
  violates it is detected (compute_return_excess, find_over_returns) and
  surfaced, never clamped.
- Bulk auto-link only links a return when exactly one candidate sale shares a
  lot with it. Ambiguous returns are reported for manual resolution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy import func
from sqlalchemy.orm import aliased

from ..extensions import db
from ..models import Lot, Match, TradeLine, TradeMaster
from ..models.inventory import LOT_CANCELLED, MATCH_KIND_RETURN, MATCH_KIND_SALE
from ..models.ledger import LOG_IN
from ..models.trades import TRADE_CANCELLED, TRADE_SALE
from ..errors import (
    AmbiguousReturnCandidate,
    InvalidOperation,
    OverReturnDetected,
)
from ..decimal_utils import ZERO, quantize_quantity, to_decimal, to_json_decimal
from .concurrency import run_with_retry
from .line_service import add_line, get_line, get_trade
from .lot_service import adjust_remaining
from .master_service import get_product
from .matching_service import refresh_line_costing
from .stock_service import post_movement


# =============================================================================
# CEILING ARITHMETIC
# =============================================================================

def returned_quantity(sale_line_id: int, *, exclude_line_id: int | None = None) -> Decimal:
    """Sum of |quantity| over returns of a sale line in non-cancelled trades."""
    q = (
        db.session.query(func.coalesce(func.sum(TradeLine.quantity), 0))
        .join(TradeMaster, TradeMaster.id == TradeLine.trade_master_id)
        .filter(
            TradeLine.parent_line_id == sale_line_id,
            TradeLine.quantity < 0,
            TradeMaster.status != TRADE_CANCELLED,
        )
    )
    if exclude_line_id is not None:
        q = q.filter(TradeLine.id != exclude_line_id)
    return -to_decimal(q.scalar())


def compute_return_excess(sale_line_id: int) -> Decimal:
    """
    Returned quantity minus sold quantity for a sale line.

    Positive means over-returned. Zero or negative is headroom left for
    further returns; the value is reported as-is, never clamped.
    """
    sale_line = get_line(sale_line_id)
    return quantize_quantity(returned_quantity(sale_line.id) - to_decimal(sale_line.quantity))


def _check_link(return_line: TradeLine, sale_line: TradeLine) -> None:
    if return_line.quantity >= 0:
        raise InvalidOperation(
            f"Line {return_line.id} is not a return (quantity {return_line.quantity})",
            details={"return_line_id": return_line.id},
        )
    if sale_line.quantity <= 0 or sale_line.parent_line_id is not None:
        raise InvalidOperation(
            f"Line {sale_line.id} is not a sale line that can be returned against",
            details={"sale_line_id": sale_line.id},
        )
    if sale_line.trade.trade_type != TRADE_SALE or return_line.trade.trade_type != TRADE_SALE:
        raise InvalidOperation("Returns can only be linked between sale lines")
    if return_line.product_id != sale_line.product_id:
        raise InvalidOperation(
            f"Return line product {return_line.product_id} differs from sale line product {sale_line.product_id}",
            details={"return_line_id": return_line.id, "sale_line_id": sale_line.id},
        )


def _check_ceiling(return_line: TradeLine, sale_line: TradeLine) -> None:
    prior = returned_quantity(sale_line.id, exclude_line_id=return_line.id)
    total = prior + abs(to_decimal(return_line.quantity))
    if total > sale_line.quantity:
        raise OverReturnDetected(
            f"Returns against line {sale_line.id} would total {total}, above the sold {sale_line.quantity}",
            details={
                "sale_line_id": sale_line.id,
                "sold": str(sale_line.quantity),
                "returned": str(total),
                "excess": str(quantize_quantity(total - to_decimal(sale_line.quantity))),
            },
        )


# =============================================================================
# RESTORATION
# =============================================================================

def _parent_capacity(parent: TradeLine, return_line_id: int) -> list[tuple[Lot, Decimal]]:
    """
    Per-lot quantity the parent consumed that is still unreturned, most recently
    matched lot first.
    """
    sale_rows = (
        db.session.query(Match.lot_id, func.sum(Match.matched_quantity), func.max(Match.id))
        .filter(Match.line_id == parent.id, Match.kind == MATCH_KIND_SALE)
        .group_by(Match.lot_id)
        .all()
    )
    sibling = aliased(TradeLine)
    returned_rows = dict(
        db.session.query(Match.lot_id, func.sum(Match.matched_quantity))
        .join(sibling, sibling.id == Match.line_id)
        .filter(
            sibling.parent_line_id == parent.id,
            sibling.id != return_line_id,
            Match.kind == MATCH_KIND_RETURN,
        )
        .group_by(Match.lot_id)
        .all()
    )

    capacity = []
    for lot_id, consumed, last_match_id in sorted(sale_rows, key=lambda r: r[2], reverse=True):
        lot = db.session.get(Lot, lot_id)
        open_qty = to_decimal(consumed) - to_decimal(returned_rows.get(lot_id))
        if open_qty > 0 and lot.status != LOT_CANCELLED:
            capacity.append((lot, open_qty))
    return capacity


def _matched_by_lot(product_id: int, kind: str) -> dict:
    return dict(
        db.session.query(Match.lot_id, func.sum(Match.matched_quantity))
        .join(Lot, Lot.id == Match.lot_id)
        .filter(Lot.product_id == product_id, Match.kind == kind)
        .group_by(Match.lot_id)
        .all()
    )


def _unlinked_capacity(product_id: int) -> list[tuple[Lot, Decimal]]:
    """
    Per-lot quantity sold out of the product's lots and not yet returned,
    newest lot first. Stock that left through production, supplier returns
    or adjustments is never refilled by a customer return.
    """
    sold = _matched_by_lot(product_id, MATCH_KIND_SALE)
    if not sold:
        return []
    returned = _matched_by_lot(product_id, MATCH_KIND_RETURN)
    lots = (
        db.session.query(Lot)
        .filter(Lot.id.in_(list(sold)), Lot.status != LOT_CANCELLED)
        .order_by(Lot.acquisition_date.desc(), Lot.display_order.desc(), Lot.id.desc())
        .all()
    )
    capacity = []
    for lot in lots:
        open_qty = to_decimal(sold[lot.id]) - to_decimal(returned.get(lot.id))
        if open_qty > 0:
            capacity.append((lot, open_qty))
    return capacity


def apply_return(line: TradeLine, trade: TradeMaster, *, actor: str | None = None) -> list[Match]:
    """
    Put a return line's quantity back into lots. Flushes, never commits.

    With a parent the ceiling is checked first and stock goes back into the
    parent's lots; without one it goes into the product's most recent lots.
    """
    needed = abs(to_decimal(line.quantity))
    if line.parent_line_id is not None:
        parent = get_line(line.parent_line_id, lock=True)
        _check_link(line, parent)
        _check_ceiling(line, parent)
        capacity = _parent_capacity(parent, line.id)
    else:
        capacity = _unlinked_capacity(line.product_id)

    takes = []
    remaining_needed = needed
    for lot, open_qty in capacity:
        if remaining_needed <= 0:
            break
        room = to_decimal(lot.original_quantity) - to_decimal(lot.remaining_quantity)
        take = min(open_qty, room, remaining_needed)
        if take > 0:
            takes.append((lot, take))
            remaining_needed -= take

    if remaining_needed > 0:
        raise InvalidOperation(
            f"Return of {needed} exceeds the {needed - remaining_needed} that can be restored to lots",
            details={"line_id": line.id, "requested": str(needed), "restorable": str(needed - remaining_needed)},
        )

    created = []
    weight = ZERO
    for lot, take in takes:
        adjust_remaining(lot.id, take)
        match = Match(
            line_id=line.id,
            lot_id=lot.id,
            matched_quantity=take,
            kind=MATCH_KIND_RETURN,
            actor=actor,
        )
        db.session.add(match)
        created.append(match)
        weight += lot.weight_for(take)

    post_movement(
        transaction_type=LOG_IN,
        product_id=line.product_id,
        quantity_delta=needed,
        weight_delta=weight,
        line_id=line.id,
        reference_number=trade.trade_number,
        unit_price=line.unit_price,
        actor=actor,
        transaction_date=trade.trade_date,
        note=(
            f"Return against sale line {line.parent_line_id}"
            if line.parent_line_id else "Unlinked customer return"
        ),
    )
    db.session.flush()
    refresh_line_costing(line, MATCH_KIND_RETURN)
    return created


def register_return(
    trade_id: int,
    product_id: int,
    quantity,
    unit_price=0,
    *,
    parent_line_id: int | None = None,
    actor: str | None = None,
    **line_fields,
) -> TradeLine:
    """
    Record a customer return on a sale trade.

    quantity may be given as the returned amount or already negated; the
    stored line is always negative.

    Raises:
        OverReturnDetected: returns against the parent would exceed its quantity
        InvalidOperation: not a sale trade, or nothing left to restore
    """
    actor = actor or current_app.config.get("LEDGER_DEFAULT_ACTOR", "system")
    quantity = -abs(quantize_quantity(quantity))
    if quantity == 0:
        raise InvalidOperation("Return quantity must be non-zero")

    def _op():
        trade = get_trade(trade_id, lock=True)
        line = register_return_locked(
            trade, product_id, quantity, unit_price,
            parent_line_id=parent_line_id, actor=actor, **line_fields,
        )
        db.session.commit()
        return line

    return run_with_retry(_op)


def register_return_locked(
    trade: TradeMaster,
    product_id: int,
    quantity,
    unit_price=0,
    *,
    parent_line_id: int | None = None,
    actor: str | None = None,
    **line_fields,
) -> TradeLine:
    if trade.trade_type != TRADE_SALE:
        raise InvalidOperation(
            f"Trade {trade.id} is a {trade.trade_type} trade; customer returns belong on sales",
            details={"trade_id": trade.id},
        )
    get_product(product_id)
    line = add_line(
        trade,
        product_id,
        -abs(to_decimal(quantity)),
        unit_price,
        parent_line_id=parent_line_id,
        **line_fields,
    )
    apply_return(line, trade, actor=actor)
    return line


# =============================================================================
# LINKING
# =============================================================================

def link_return(
    return_line_id: int,
    sale_line_id: int,
    *,
    enforce_ceiling: bool = True,
) -> TradeLine:
    """
    Attach an unlinked return line to the sale line it reduces.

    enforce_ceiling=False is the legacy-data path: the link is made and any
    excess is left for compute_return_excess to report.
    """
    def _op():
        return_line = get_line(return_line_id, lock=True)
        sale_line = get_line(sale_line_id, lock=True)
        _link_locked(return_line, sale_line, enforce_ceiling=enforce_ceiling)
        db.session.commit()
        return return_line

    return run_with_retry(_op)


def _link_locked(return_line: TradeLine, sale_line: TradeLine, *, enforce_ceiling: bool) -> None:
    _check_link(return_line, sale_line)
    if return_line.parent_line_id is not None and return_line.parent_line_id != sale_line.id:
        raise InvalidOperation(
            f"Return line {return_line.id} is already linked to line {return_line.parent_line_id}",
            details={"return_line_id": return_line.id, "parent_line_id": return_line.parent_line_id},
        )
    if enforce_ceiling:
        _check_ceiling(return_line, sale_line)
    return_line.parent_line_id = sale_line.id
    db.session.flush()


def find_over_returns() -> list[dict]:
    """Sale lines whose linked returns already exceed the sold quantity."""
    child = aliased(TradeLine)
    child_trade = aliased(TradeMaster)
    rows = (
        db.session.query(
            TradeLine.id,
            TradeLine.product_id,
            TradeLine.quantity,
            func.sum(child.quantity),
        )
        .join(child, child.parent_line_id == TradeLine.id)
        .join(child_trade, child_trade.id == child.trade_master_id)
        .filter(child.quantity < 0, child_trade.status != TRADE_CANCELLED)
        .group_by(TradeLine.id, TradeLine.product_id, TradeLine.quantity)
        .order_by(TradeLine.id.asc())
        .all()
    )

    result = []
    for line_id, product_id, sold, returned_sum in rows:
        returned = -to_decimal(returned_sum)
        excess = quantize_quantity(returned - to_decimal(sold))
        if excess > 0:
            current_app.logger.warning(
                "Over-return: sale line %s sold %s, returned %s (excess %s)",
                line_id, sold, returned, excess,
            )
            result.append({
                "sale_line_id": line_id,
                "product_id": product_id,
                "sold": to_json_decimal(to_decimal(sold)),
                "returned": to_json_decimal(returned),
                "excess": to_json_decimal(excess),
            })
    return result


# =============================================================================
# BULK REPAIR
# =============================================================================

@dataclass
class AutoLinkReport:
    linked: list[dict] = field(default_factory=list)
    ambiguous: list[dict] = field(default_factory=list)
    unmatched: list[int] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "linked": self.linked,
            "ambiguous": self.ambiguous,
            "unmatched": self.unmatched,
            "dry_run": self.dry_run,
        }


def candidate_sale_lines(return_line: TradeLine) -> list[int]:
    """
    Sale lines of the same product that consumed a lot this return restored into.
    """
    lot_ids = [
        lot_id for (lot_id,) in db.session.query(Match.lot_id)
        .filter(Match.line_id == return_line.id, Match.kind == MATCH_KIND_RETURN)
        .distinct()
        .all()
    ]
    if not lot_ids:
        return []
    rows = (
        db.session.query(TradeLine.id)
        .join(Match, Match.line_id == TradeLine.id)
        .join(TradeMaster, TradeMaster.id == TradeLine.trade_master_id)
        .filter(
            Match.lot_id.in_(lot_ids),
            Match.kind == MATCH_KIND_SALE,
            TradeLine.product_id == return_line.product_id,
            TradeLine.quantity > 0,
            TradeLine.id != return_line.id,
            TradeMaster.trade_type == TRADE_SALE,
            TradeMaster.status != TRADE_CANCELLED,
        )
        .distinct()
        .order_by(TradeLine.id.asc())
        .all()
    )
    return [line_id for (line_id,) in rows]


def _unlinked_returns() -> list[TradeLine]:
    return (
        db.session.query(TradeLine)
        .join(TradeMaster, TradeMaster.id == TradeLine.trade_master_id)
        .filter(
            TradeLine.quantity < 0,
            TradeLine.parent_line_id.is_(None),
            TradeMaster.trade_type == TRADE_SALE,
            TradeMaster.status != TRADE_CANCELLED,
        )
        .order_by(TradeLine.id.asc())
        .all()
    )


def auto_link_return(return_line_id: int) -> TradeLine:
    """Link one unlinked return through shared lots; refuses to guess between candidates."""
    def _op():
        return_line = get_line(return_line_id, lock=True)
        if return_line.parent_line_id is not None:
            raise InvalidOperation(f"Return line {return_line.id} is already linked")
        candidates = candidate_sale_lines(return_line)
        if not candidates:
            raise InvalidOperation(
                f"No sale line shares a lot with return line {return_line.id}",
                details={"return_line_id": return_line.id},
            )
        if len(candidates) > 1:
            raise AmbiguousReturnCandidate(
                f"Return line {return_line.id} has {len(candidates)} candidate sale lines",
                details={"return_line_id": return_line.id, "candidates": candidates},
            )
        sale_line = get_line(candidates[0], lock=True)
        _link_locked(return_line, sale_line, enforce_ceiling=True)
        db.session.commit()
        return return_line

    return run_with_retry(_op)


def auto_link_returns(*, dry_run: bool = False) -> AutoLinkReport:
    """
    Bulk repair for legacy returns with no parent line.

    Links are made without the ceiling check (this is legacy data); run
    find_over_returns() afterwards to surface any excess they reveal.
    """
    def _op():
        report = AutoLinkReport(dry_run=dry_run)
        for return_line in _unlinked_returns():
            candidates = candidate_sale_lines(return_line)
            if not candidates:
                report.unmatched.append(return_line.id)
            elif len(candidates) > 1:
                current_app.logger.warning(
                    "Ambiguous return: line %s has candidate sale lines %s; left unlinked",
                    return_line.id, candidates,
                )
                report.ambiguous.append({"return_line_id": return_line.id, "candidates": candidates})
            else:
                if not dry_run:
                    sale_line = get_line(candidates[0], lock=True)
                    _link_locked(return_line, sale_line, enforce_ceiling=False)
                report.linked.append({"return_line_id": return_line.id, "sale_line_id": candidates[0]})

        if dry_run:
            db.session.rollback()
        else:
            db.session.commit()
        return report

    report = run_with_retry(_op)
    current_app.logger.info(
        "Return auto-link: %d linked, %d ambiguous, %d unmatched%s",
        len(report.linked), len(report.ambiguous), len(report.unmatched),
        " (dry run)" if dry_run else "",
    )
    return report
