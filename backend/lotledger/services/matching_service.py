# Overview: Service-layer operations for matching sale lines against lots (FIFO and manual).

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Lot, Match, TradeLine, TradeMaster
from ..models.inventory import (
    LOT_AVAILABLE,
    LOT_CANCELLED,
    MATCH_KIND_SALE,
)
from ..models.ledger import LOG_ADJUST, LOG_OUT
from ..models.trades import (
    MATCH_MATCHED,
    MATCH_PARTIAL,
    MATCH_PENDING,
    TRADE_SALE,
)
from ..errors import (
    AlreadyMatched,
    InsufficientLotQuantity,
    InsufficientStock,
    InvalidOperation,
)
from ..decimal_utils import ZERO, quantize_quantity, to_decimal, to_json_decimal, weighted_average
from .concurrency import run_with_retry
from .line_service import child_lines, get_line
from .lot_service import adjust_remaining, get_available_lots, get_lot
from .master_service import get_product
from .stock_service import post_movement
"""
Matching Engine Invariants (authoritative)

- A sale line consumes lots oldest-first (acquisition date, then insertion order).
- SUM(matched_quantity) for a line never exceeds the line's quantity.
- SUM(consuming matched_quantity) for a lot never exceeds its original quantity.
- Strict by default: if the available lots cannot cover the line, nothing is
  matched and InsufficientStock is raised. allow_backorder=True keeps whatever
  could be matched and leaves the line PARTIAL or PENDING.
- cost_basis = SUM(q * lot.unit_cost) / SUM(q) over the line's matches; a line
  with nothing matched is flagged (cost_basis_missing) instead of costed at zero.
- Every quantity change posts one movement (aggregate + log) in the same transaction.
"""


@dataclass
class AllocationResult:
    line: TradeLine
    matches: list[Match] = field(default_factory=list)
    matched_quantity: Decimal = ZERO
    partial: bool = False
    shortage: Decimal = ZERO

    @property
    def cost_basis(self) -> Optional[Decimal]:
        return self.line.cost_basis

    @property
    def matching_status(self) -> str:
        return self.line.matching_status

    def to_dict(self) -> dict:
        return {
            "line": self.line.to_dict(),
            "matches": [m.to_dict() for m in self.matches],
            "matched_quantity": to_json_decimal(self.matched_quantity),
            "cost_basis": to_json_decimal(self.cost_basis),
            "matching_status": self.matching_status,
            "partial": self.partial,
            "shortage": to_json_decimal(self.shortage),
        }


def _resolve_backorder(allow_backorder: bool | None) -> bool:
    if allow_backorder is None:
        return bool(current_app.config.get("LEDGER_ALLOW_BACKORDER", False))
    return allow_backorder


def _default_actor(actor: str | None) -> str:
    return actor or current_app.config.get("LEDGER_DEFAULT_ACTOR", "system")


def line_matches(line_id: int, kind: str = MATCH_KIND_SALE) -> list[Match]:
    return (
        db.session.query(Match)
        .filter(Match.line_id == line_id, Match.kind == kind)
        .order_by(Match.id.asc())
        .all()
    )


def matched_quantity(line_id: int, kind: str = MATCH_KIND_SALE) -> Decimal:
    value = db.session.query(
        func.coalesce(func.sum(Match.matched_quantity), 0)
    ).filter(Match.line_id == line_id, Match.kind == kind).scalar()
    return to_decimal(value)


def refresh_line_costing(line: TradeLine, kind: str = MATCH_KIND_SALE) -> None:
    """Recompute matching status and weighted cost basis from the line's matches."""
    rows = (
        db.session.query(Match.matched_quantity, Lot.unit_cost)
        .join(Lot, Lot.id == Match.lot_id)
        .filter(Match.line_id == line.id, Match.kind == kind)
        .all()
    )
    total = sum((to_decimal(q) for q, _ in rows), ZERO)
    required = abs(to_decimal(line.quantity))

    if total >= required and total > 0:
        line.matching_status = MATCH_MATCHED
    elif total > 0:
        line.matching_status = MATCH_PARTIAL
    else:
        line.matching_status = MATCH_PENDING

    cost = weighted_average(rows)
    line.cost_basis = cost
    line.cost_basis_missing = cost is None


def _ensure_sale_line(line: TradeLine, trade: TradeMaster) -> None:
    if trade.trade_type != TRADE_SALE:
        raise InvalidOperation(
            f"Line {line.id} belongs to a {trade.trade_type} trade; only sale lines are matched",
            details={"line_id": line.id, "trade_type": trade.trade_type},
        )
    if line.quantity <= 0:
        raise InvalidOperation(
            f"Line {line.id} is a return; returns are linked, not allocated",
            details={"line_id": line.id},
        )


def _consume(
    line: TradeLine,
    trade: TradeMaster,
    takes: Iterable[tuple[Lot, Decimal]],
    *,
    actor: str,
) -> list[Match]:
    """Decrement lots, record matches and post one OUT movement for the total."""
    created = []
    total = ZERO
    weight = ZERO
    for lot, take in takes:
        adjust_remaining(lot.id, -take)
        match = Match(
            line_id=line.id,
            lot_id=lot.id,
            matched_quantity=take,
            kind=MATCH_KIND_SALE,
            actor=actor,
        )
        db.session.add(match)
        created.append(match)
        total += take
        weight += lot.weight_for(take)

    if total > 0:
        post_movement(
            transaction_type=LOG_OUT,
            product_id=line.product_id,
            quantity_delta=-total,
            weight_delta=-weight,
            line_id=line.id,
            reference_number=trade.trade_number,
            unit_price=line.unit_price,
            actor=actor,
            transaction_date=trade.trade_date,
            note=f"Sale line {line.id} matched against {len(created)} lot(s)",
        )
    db.session.flush()
    return created


def _allocate_locked(
    line: TradeLine,
    *,
    allow_backorder: bool,
    actor: str,
) -> AllocationResult:
    """Core FIFO allocation without retry or commit."""
    trade = line.trade
    _ensure_sale_line(line, trade)
    if line.matching_status == MATCH_MATCHED:
        raise AlreadyMatched(
            f"Line {line.id} is already matched; reverse it before matching again",
            details={"line_id": line.id},
        )
    get_product(line.product_id)

    already = matched_quantity(line.id)
    needed = quantize_quantity(to_decimal(line.quantity) - already)

    lots = get_available_lots(line.product_id, lock=True)
    available = sum((to_decimal(lot.remaining_quantity) for lot in lots), ZERO)

    if available < needed and not allow_backorder:
        raise InsufficientStock(
            f"Insufficient stock for product {line.product_id}: need {needed}, available {available}",
            details={
                "line_id": line.id,
                "product_id": line.product_id,
                "requested": str(needed),
                "available": str(available),
            },
        )

    takes = []
    remaining_needed = needed
    for lot in lots:
        if remaining_needed <= 0:
            break
        take = min(to_decimal(lot.remaining_quantity), remaining_needed)
        takes.append((lot, take))
        remaining_needed -= take

    created = _consume(line, trade, takes, actor=actor)
    refresh_line_costing(line)

    matched_now = sum((take for _, take in takes), ZERO)
    shortage = quantize_quantity(needed - matched_now)
    result = AllocationResult(
        line=line,
        matches=created,
        matched_quantity=matched_now,
        partial=shortage > 0,
        shortage=shortage,
    )
    if result.partial:
        current_app.logger.warning(
            "Backorder: sale line %s for product %s short by %s (status %s)",
            line.id, line.product_id, shortage, line.matching_status,
        )
    return result


def allocate(
    line_id: int,
    *,
    allow_backorder: bool | None = None,
    actor: str | None = None,
) -> AllocationResult:
    """
    FIFO-allocate a sale line's unmatched quantity against available lots.

    Strict unless allow_backorder is True (or LEDGER_ALLOW_BACKORDER is set).
    A PARTIAL line may be allocated again to pick up newly received stock.
    """
    backorder = _resolve_backorder(allow_backorder)
    actor = _default_actor(actor)

    def _op():
        line = get_line(line_id, lock=True)
        result = _allocate_locked(line, allow_backorder=backorder, actor=actor)
        db.session.commit()
        return result

    return run_with_retry(_op)


def _allocate_manual_locked(
    line: TradeLine,
    selections: list[tuple[int, Decimal]],
    *,
    actor: str,
) -> AllocationResult:
    trade = line.trade
    _ensure_sale_line(line, trade)
    if line.matching_status == MATCH_MATCHED:
        raise AlreadyMatched(f"Line {line.id} is already matched", details={"line_id": line.id})
    if not selections:
        raise InvalidOperation("At least one lot selection is required")

    unmatched = quantize_quantity(to_decimal(line.quantity) - matched_quantity(line.id))
    requested = sum((quantize_quantity(q) for _, q in selections), ZERO)
    if requested > unmatched:
        raise InvalidOperation(
            f"Selected quantity {requested} exceeds unmatched quantity {unmatched}",
            details={"line_id": line.id, "requested": str(requested), "unmatched": str(unmatched)},
        )

    # Lock in id order so two manual matches cannot deadlock each other
    takes = []
    for lot_id, quantity in sorted(selections, key=lambda s: s[0]):
        quantity = quantize_quantity(quantity)
        if quantity <= 0:
            continue
        lot = get_lot(lot_id, lock=True)
        if lot.product_id != line.product_id:
            raise InvalidOperation(
                f"Lot {lot.id} holds product {lot.product_id}, not {line.product_id}",
                details={"lot_id": lot.id},
            )
        if lot.status != LOT_AVAILABLE:
            raise InvalidOperation(f"Lot {lot.id} is {lot.status}", details={"lot_id": lot.id})
        if quantity > lot.remaining_quantity:
            raise InsufficientLotQuantity(
                f"Lot {lot.id} has {lot.remaining_quantity} remaining; cannot take {quantity}",
                details={"lot_id": lot.id, "remaining": str(lot.remaining_quantity), "requested": str(quantity)},
            )
        takes.append((lot, quantity))

    created = _consume(line, trade, takes, actor=actor)
    refresh_line_costing(line)
    matched_now = sum((q for _, q in takes), ZERO)
    return AllocationResult(
        line=line,
        matches=created,
        matched_quantity=matched_now,
        partial=line.matching_status != MATCH_MATCHED,
        shortage=quantize_quantity(unmatched - matched_now),
    )


def allocate_manual(
    line_id: int,
    selections: list[tuple[int, Decimal]],
    *,
    actor: str | None = None,
) -> AllocationResult:
    """Match a sale line against explicitly chosen lots: [(lot_id, quantity), ...]."""
    actor = _default_actor(actor)

    def _op():
        line = get_line(line_id, lock=True)
        result = _allocate_manual_locked(line, selections, actor=actor)
        db.session.commit()
        return result

    return run_with_retry(_op)


def release_matches(
    line: TradeLine,
    kind: str,
    *,
    direction: int,
    actor: str,
    reference_number: str | None = None,
    note: str | None = None,
) -> Decimal:
    """
    Undo a line's matches of one kind and delete them.

    direction=+1 puts matched quantity back into the lots (sale or purchase
    return undone); direction=-1 takes it out again (customer return undone).
    Cancelled lots are outside the aggregate, so their share is not posted.
    Returns the quantity moved.
    """
    matches = line_matches(line.id, kind)
    total = ZERO
    posted = ZERO
    weight = ZERO
    for match in matches:
        qty = to_decimal(match.matched_quantity)
        lot = adjust_remaining(match.lot_id, direction * qty)
        total += qty
        if lot.status != LOT_CANCELLED:
            posted += qty
            weight += lot.weight_for(qty)
        db.session.delete(match)

    if posted > 0:
        post_movement(
            transaction_type=LOG_ADJUST,
            product_id=line.product_id,
            quantity_delta=direction * posted,
            weight_delta=direction * weight,
            reference_number=reference_number,
            unit_price=line.unit_price,
            actor=actor,
            note=note,
        )
    db.session.flush()
    return total


def unmatch(line_id: int, *, actor: str | None = None) -> TradeLine:
    """
    Cancel a sale line's matching: quantities go back to their lots and the
    line returns to PENDING, ready to be matched again.
    """
    actor = _default_actor(actor)

    def _op():
        line = get_line(line_id, lock=True)
        trade = line.trade
        _ensure_sale_line(line, trade)
        returns = child_lines(line.id)
        if returns:
            raise InvalidOperation(
                f"Sale line {line.id} has {len(returns)} linked return(s); reverse them first",
                details={"line_id": line.id, "return_line_ids": [r.id for r in returns]},
            )
        restored = release_matches(
            line,
            MATCH_KIND_SALE,
            direction=1,
            actor=actor,
            reference_number=trade.trade_number,
            note=f"Matching cancelled for sale line {line.id}",
        )
        if restored == 0:
            raise InvalidOperation(f"Line {line.id} has no matches to cancel", details={"line_id": line.id})
        refresh_line_costing(line)
        db.session.commit()
        return line

    return run_with_retry(_op)


def matching_status_summary() -> dict:
    """Counts of positive sale lines by matching status."""
    rows = (
        db.session.query(TradeLine.matching_status, func.count(TradeLine.id))
        .join(TradeMaster, TradeMaster.id == TradeLine.trade_master_id)
        .filter(TradeMaster.trade_type == TRADE_SALE, TradeLine.quantity > 0)
        .group_by(TradeLine.matching_status)
        .all()
    )
    summary = {MATCH_PENDING: 0, MATCH_PARTIAL: 0, MATCH_MATCHED: 0}
    for status, count in rows:
        summary[status] = int(count)
    return summary
