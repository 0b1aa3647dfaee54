# Overview: Lookups and row creation for trade headers and lines, shared by the ledger services.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from sqlalchemy import func

from ..extensions import db
from ..models import TradeLine, TradeMaster
from ..models.trades import MATCH_PENDING
from ..errors import LineNotFound, TradeNotFound
from ..decimal_utils import quantize_cost, quantize_quantity
from .concurrency import lock_for_update


@dataclass(frozen=True)
class TradeContext:
    """
    Parent trade fields a line reversal depends on.

    WHY: deleting a trade removes the header along with its lines; each child
    reversal needs the header's type and date, so they are captured up front
    and passed in instead of re-read mid-deletion.
    """
    trade_id: int
    trade_type: str
    trade_date: date
    trade_number: str | None
    status: str

    @classmethod
    def of(cls, trade: TradeMaster) -> "TradeContext":
        return cls(
            trade_id=trade.id,
            trade_type=trade.trade_type,
            trade_date=trade.trade_date,
            trade_number=trade.trade_number,
            status=trade.status,
        )


def get_trade(trade_id: int, *, lock: bool = False) -> TradeMaster:
    q = db.session.query(TradeMaster).filter_by(id=trade_id)
    if lock:
        q = lock_for_update(q)
    trade = q.first()
    if trade is None:
        raise TradeNotFound(f"Trade {trade_id} not found", details={"trade_id": trade_id})
    return trade


def get_line(line_id: int, *, lock: bool = False) -> TradeLine:
    q = db.session.query(TradeLine).filter_by(id=line_id)
    if lock:
        q = lock_for_update(q)
    line = q.first()
    if line is None:
        raise LineNotFound(f"Trade line {line_id} not found", details={"line_id": line_id})
    return line


def _next_seq_no(trade_id: int) -> int:
    current = (
        db.session.query(func.coalesce(func.max(TradeLine.seq_no), 0))
        .filter(TradeLine.trade_master_id == trade_id)
        .scalar()
    )
    return int(current or 0) + 1


def add_line(
    trade: TradeMaster,
    product_id: int,
    quantity,
    unit_price,
    *,
    total_weight=None,
    weight_unit: str | None = None,
    shipper_location: str | None = None,
    sender: str | None = None,
    parent_line_id: int | None = None,
    seq_no: int | None = None,
    matching_status: str = MATCH_PENDING,
) -> TradeLine:
    """Insert a line row only; quantity effects belong to the calling service."""
    line = TradeLine(
        trade_master_id=trade.id,
        seq_no=seq_no or _next_seq_no(trade.id),
        product_id=product_id,
        quantity=quantize_quantity(quantity),
        unit_price=quantize_cost(unit_price or 0),
        total_weight=quantize_quantity(total_weight) if total_weight is not None else None,
        weight_unit=weight_unit,
        shipper_location=shipper_location,
        sender=sender,
        parent_line_id=parent_line_id,
        matching_status=matching_status,
        cost_basis_missing=False,
    )
    db.session.add(line)
    db.session.flush()
    return line


def child_lines(line_id: int) -> list[TradeLine]:
    """Return lines whose parent is the given line."""
    return (
        db.session.query(TradeLine)
        .filter(TradeLine.parent_line_id == line_id)
        .order_by(TradeLine.id.asc())
        .all()
    )
