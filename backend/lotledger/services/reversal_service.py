# Overview: Reversal engine; undoes a line's effect on lots, aggregate and log on edit or delete.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Lot, ProductionRecord, TradeLine
from ..models.inventory import (
    MATCH_KIND_PURCHASE_RETURN,
    MATCH_KIND_RETURN,
    MATCH_KIND_SALE,
)
from ..models.production import PRODUCTION_OUTPUT_REMOVED
from ..models.trades import TRADE_PRODUCTION, TRADE_PURCHASE, TRADE_SALE
from ..errors import InvalidOperation
from .concurrency import run_with_retry
from .ledger_service import delete_line_entries
from .line_service import TradeContext, child_lines, get_line, get_trade
from .lot_service import delete_lot
from .matching_service import _resolve_backorder, release_matches
"""
Reversal Invariants (authoritative)

- Parent trade context is snapshotted before any child is touched and passed
  down explicitly.
- Purchase: the lot it created must be untouched (no matches, no production
  consumption); the lot is deleted and its stock leaves the aggregate.
- Sale: every match is released back to its lot and deleted. A sale with
  linked returns is reversed only after those returns.
- Production output: the output lot must be unmatched; inputs stay consumed
  until the production itself is reversed.
- The line's own log rows are deleted with it; the reversal writes one ADJUST
  row with no line_id so the audit trail of the reversal survives.
- A trade deletion reverses every child in one transaction or none.
"""

EDITABLE_FIELDS = (
    "product_id",
    "quantity",
    "unit_price",
    "total_weight",
    "weight_unit",
    "shipper_location",
    "sender",
    "parent_line_id",
)


def _actor(actor: str | None) -> str:
    return actor or current_app.config.get("LEDGER_DEFAULT_ACTOR", "system")


def _reverse_purchase(line: TradeLine, ctx: TradeContext, actor: str) -> None:
    if line.quantity < 0:
        release_matches(
            line,
            MATCH_KIND_PURCHASE_RETURN,
            direction=1,
            actor=actor,
            reference_number=ctx.trade_number,
            note=f"Reversal of supplier return line {line.id}",
        )
        return

    lot = db.session.query(Lot).filter_by(trade_line_id=line.id).first()
    if lot is not None:
        # LotInUse when sold, returned to the supplier or consumed by production
        delete_lot(
            lot.id,
            actor=actor,
            reference_number=ctx.trade_number,
            note=f"Reversal of purchase line {line.id}",
        )


def _reverse_sale(line: TradeLine, ctx: TradeContext, actor: str) -> None:
    if line.quantity < 0:
        # Taking returned stock back out can fail if it has been sold again
        release_matches(
            line,
            MATCH_KIND_RETURN,
            direction=-1,
            actor=actor,
            reference_number=ctx.trade_number,
            note=f"Reversal of return line {line.id}",
        )
        return

    returns = child_lines(line.id)
    if returns:
        raise InvalidOperation(
            f"Sale line {line.id} has {len(returns)} linked return(s); reverse them first",
            details={"line_id": line.id, "return_line_ids": [r.id for r in returns]},
        )
    release_matches(
        line,
        MATCH_KIND_SALE,
        direction=1,
        actor=actor,
        reference_number=ctx.trade_number,
        note=f"Reversal of sale line {line.id}",
    )


def _reverse_production_output(line: TradeLine, ctx: TradeContext, actor: str) -> None:
    record = db.session.query(ProductionRecord).filter_by(output_line_id=line.id).first()
    lot_id = record.output_lot_id if record is not None else None
    if lot_id is None:
        lot = db.session.query(Lot).filter_by(trade_line_id=line.id).first()
        lot_id = lot.id if lot is not None else None
    if lot_id is not None:
        delete_lot(
            lot_id,
            actor=actor,
            reference_number=ctx.trade_number,
            note=f"Reversal of production output line {line.id}",
        )
    if record is not None:
        record.output_lot_id = None
        record.output_line_id = None
        record.status = PRODUCTION_OUTPUT_REMOVED


def reverse_line_locked(line: TradeLine, ctx: TradeContext, *, actor: str) -> None:
    """Undo one line and delete it. Flushes, never commits."""
    if ctx.trade_type == TRADE_PURCHASE:
        _reverse_purchase(line, ctx, actor)
    elif ctx.trade_type == TRADE_SALE:
        _reverse_sale(line, ctx, actor)
    elif ctx.trade_type == TRADE_PRODUCTION:
        _reverse_production_output(line, ctx, actor)
    else:
        raise InvalidOperation(f"Unknown trade type {ctx.trade_type}")

    delete_line_entries(line.id)
    db.session.delete(line)
    db.session.flush()


def reverse_line(line_id: int, *, actor: str | None = None, context: TradeContext | None = None) -> None:
    """Reverse and delete a single line; the trade header stays."""
    actor = _actor(actor)

    def _op():
        line = get_line(line_id, lock=True)
        ctx = context or TradeContext.of(line.trade)
        reverse_line_locked(line, ctx, actor=actor)
        db.session.commit()
        current_app.logger.info("Reversed %s line %s (%s)", ctx.trade_type, line_id, ctx.trade_number)

    run_with_retry(_op)


def delete_trade(trade_id: int, *, actor: str | None = None) -> TradeContext:
    """
    Reverse every line of a trade and delete it, atomically.

    Returns are reversed before the sales they reduce; remaining lines go in
    reverse entry order.
    """
    actor = _actor(actor)

    def _op():
        trade = get_trade(trade_id, lock=True)
        ctx = TradeContext.of(trade)

        lines = sorted(trade.lines, key=lambda l: (l.quantity >= 0, -l.seq_no, -l.id))
        for line in lines:
            reverse_line_locked(get_line(line.id, lock=True), ctx, actor=actor)

        db.session.query(ProductionRecord).filter_by(trade_master_id=ctx.trade_id).update(
            {"trade_master_id": None}, synchronize_session=False
        )
        db.session.expire(trade, ["lines"])
        db.session.delete(trade)
        db.session.commit()
        current_app.logger.info(
            "Deleted %s trade %s with %d line(s)", ctx.trade_type, ctx.trade_number, len(lines)
        )
        return ctx

    return run_with_retry(_op)


def edit_line(
    line_id: int,
    changes: dict,
    *,
    allow_backorder: bool | None = None,
    actor: str | None = None,
) -> TradeLine:
    """
    Edit as delete-then-recreate inside one transaction.

    The replacement keeps the line's seq_no; a failed re-registration (for
    example InsufficientStock on a larger quantity) leaves the original intact.
    """
    from .trade_service import register_line_locked

    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvalidOperation(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
    actor = _actor(actor)
    backorder = _resolve_backorder(allow_backorder)

    def _op():
        line = get_line(line_id, lock=True)
        trade = line.trade
        ctx = TradeContext.of(trade)
        values = {field: getattr(line, field) for field in EDITABLE_FIELDS}
        if ("quantity" in changes or "product_id" in changes) and "total_weight" not in changes:
            values["total_weight"] = None
        values.update(changes)
        values["seq_no"] = line.seq_no

        reverse_line_locked(line, ctx, actor=actor)
        replacement = register_line_locked(trade, values, allow_backorder=backorder, actor=actor)
        db.session.commit()
        return replacement

    return run_with_retry(_op)
