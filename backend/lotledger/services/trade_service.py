# Overview: Inbound boundary; registers purchase and sale lines and routes them to the ledger engines.

from __future__ import annotations

from datetime import date

from flask import current_app

from ..extensions import db
from ..models import Lot, Match, TradeLine, TradeMaster
from ..models.inventory import MATCH_KIND_PURCHASE_RETURN
from ..models.ledger import LOG_IN, LOG_OUT
from ..models.trades import (
    MATCH_MATCHED,
    TRADE_ACTIVE,
    TRADE_PRODUCTION,
    TRADE_PURCHASE,
    TRADE_SALE,
    TRADE_TYPES,
)
from ..errors import InvalidOperation
from ..decimal_utils import quantize_cost, quantize_quantity, to_decimal
from ..time_utils import today
from .concurrency import run_with_retry
from .line_service import add_line, get_line, get_trade
from .lot_service import adjust_remaining, create_lot
from .master_service import company_name, get_product
from .matching_service import AllocationResult, _allocate_locked, _resolve_backorder, refresh_line_costing
from .return_service import register_return_locked
from .stock_service import post_movement
"""
Inbound Invariants (authoritative)

- A purchase line creates exactly one lot, one aggregate change and one IN entry.
- A negative purchase line is a return to the supplier; it must name the
  purchase line it reduces and takes stock out of that line's lot.
- A positive sale line is allocated immediately; a negative one is a customer
  return handled by the return linker.
- Each registration is one transaction: the line never exists without its
  quantity effects.
"""

TRADE_NUMBER_PREFIXES = {
    TRADE_PURCHASE: "P",
    TRADE_SALE: "S",
    TRADE_PRODUCTION: "PR",
}

LINE_FIELDS = (
    "total_weight",
    "weight_unit",
    "shipper_location",
    "sender",
    "seq_no",
)


def _actor(actor: str | None) -> str:
    return actor or current_app.config.get("LEDGER_DEFAULT_ACTOR", "system")


def _line_fields(fields: dict) -> dict:
    unknown = set(fields) - set(LINE_FIELDS)
    if unknown:
        raise InvalidOperation(f"Unknown line fields: {', '.join(sorted(unknown))}")
    return fields


def create_trade_locked(
    trade_type: str,
    trade_date: date | None = None,
    *,
    company_id: int | None = None,
    warehouse_id: int | None = None,
    trade_number: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> TradeMaster:
    if trade_type not in TRADE_TYPES:
        raise InvalidOperation(
            f"trade_type must be one of {', '.join(TRADE_TYPES)}",
            details={"trade_type": trade_type},
        )
    trade = TradeMaster(
        trade_type=trade_type,
        trade_date=trade_date or today(),
        company_id=company_id,
        warehouse_id=warehouse_id,
        trade_number=trade_number,
        status=TRADE_ACTIVE,
        notes=notes,
        created_by=actor,
    )
    db.session.add(trade)
    db.session.flush()
    # Document number needs the id, so it is assigned after the insert
    if trade.trade_number is None:
        trade.trade_number = f"{TRADE_NUMBER_PREFIXES[trade_type]}-{trade.id:06d}"
        db.session.flush()
    return trade


def create_trade(
    trade_type: str,
    trade_date: date | None = None,
    *,
    company_id: int | None = None,
    warehouse_id: int | None = None,
    trade_number: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> TradeMaster:
    def _op():
        trade = create_trade_locked(
            trade_type,
            trade_date,
            company_id=company_id,
            warehouse_id=warehouse_id,
            trade_number=trade_number,
            notes=notes,
            actor=_actor(actor),
        )
        db.session.commit()
        return trade

    return run_with_retry(_op)


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------

def _register_purchase_locked(
    trade: TradeMaster,
    product_id: int,
    quantity,
    unit_price,
    *,
    parent_line_id: int | None,
    actor: str,
    **fields,
) -> tuple[TradeLine, Lot | None]:
    if trade.trade_type != TRADE_PURCHASE:
        raise InvalidOperation(
            f"Trade {trade.id} is a {trade.trade_type} trade, not a purchase",
            details={"trade_id": trade.id},
        )
    product = get_product(product_id)
    quantity = quantize_quantity(quantity)
    if quantity == 0:
        raise InvalidOperation("Purchase quantity must be non-zero")

    if quantity < 0:
        line = _register_purchase_return(trade, product.id, quantity, unit_price, parent_line_id, actor, fields)
        return line, None

    if parent_line_id is not None:
        raise InvalidOperation("Only purchase returns may reference a parent line")

    # Purchase lines are their own match
    line = add_line(trade, product.id, quantity, unit_price, matching_status=MATCH_MATCHED, **fields)
    lot = create_lot(
        product.id,
        trade.trade_date,
        quantity,
        unit_price,
        total_weight=fields.get("total_weight"),
        weight_unit=fields.get("weight_unit"),
        trade_line_id=line.id,
        company_id=trade.company_id,
        warehouse_id=trade.warehouse_id,
        shipper_location=fields.get("shipper_location"),
        sender=fields.get("sender"),
    )
    line.cost_basis = lot.unit_cost
    if line.total_weight is None:
        line.total_weight = lot.total_weight
        line.weight_unit = lot.weight_unit

    supplier = company_name(trade.company_id)
    post_movement(
        transaction_type=LOG_IN,
        product_id=product.id,
        quantity_delta=quantity,
        weight_delta=lot.total_weight,
        line_id=line.id,
        reference_number=trade.trade_number,
        unit_price=lot.unit_cost,
        unit_cost=lot.unit_cost,
        actor=actor,
        transaction_date=trade.trade_date,
        note=f"Purchase from {supplier}" if supplier else "Purchase",
    )
    db.session.flush()
    return line, lot


def _register_purchase_return(trade, product_id, quantity, unit_price, parent_line_id, actor, fields) -> TradeLine:
    """Stock sent back to the supplier comes out of the lot the parent purchase created."""
    if parent_line_id is None:
        raise InvalidOperation("A purchase return must reference the purchase line it reduces")
    parent = get_line(parent_line_id, lock=True)
    if parent.trade.trade_type != TRADE_PURCHASE or parent.quantity <= 0:
        raise InvalidOperation(
            f"Line {parent.id} is not a purchase line",
            details={"parent_line_id": parent.id},
        )
    if parent.product_id != product_id:
        raise InvalidOperation(
            f"Purchase return product {product_id} differs from purchase line product {parent.product_id}",
            details={"parent_line_id": parent.id},
        )
    lot = db.session.query(Lot).filter_by(trade_line_id=parent.id).first()
    if lot is None:
        raise InvalidOperation(f"Purchase line {parent.id} has no lot", details={"parent_line_id": parent.id})

    returned = abs(quantity)
    line = add_line(
        trade, product_id, quantity, unit_price,
        parent_line_id=parent.id, matching_status=MATCH_MATCHED, **fields,
    )
    # Raises InsufficientLotQuantity when the stock has already been sold
    adjust_remaining(lot.id, -returned)
    db.session.add(Match(
        line_id=line.id,
        lot_id=lot.id,
        matched_quantity=returned,
        kind=MATCH_KIND_PURCHASE_RETURN,
        actor=actor,
    ))
    db.session.flush()
    refresh_line_costing(line, MATCH_KIND_PURCHASE_RETURN)

    post_movement(
        transaction_type=LOG_OUT,
        product_id=product_id,
        quantity_delta=-returned,
        weight_delta=-lot.weight_for(returned),
        line_id=line.id,
        reference_number=trade.trade_number,
        unit_price=lot.unit_cost,
        actor=actor,
        transaction_date=trade.trade_date,
        note=f"Return to supplier of purchase line {parent.id}",
    )
    return line


def register_purchase_line(
    trade_id: int,
    product_id: int,
    quantity,
    unit_price,
    *,
    parent_line_id: int | None = None,
    actor: str | None = None,
    **fields,
) -> tuple[TradeLine, Lot | None]:
    """
    Register a purchase line: (line, lot). A purchase return yields (line, None).
    """
    fields = _line_fields(fields)
    actor = _actor(actor)

    def _op():
        trade = get_trade(trade_id, lock=True)
        result = _register_purchase_locked(
            trade, product_id, quantity, unit_price,
            parent_line_id=parent_line_id, actor=actor, **fields,
        )
        db.session.commit()
        return result

    return run_with_retry(_op)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------

def _register_sale_locked(
    trade: TradeMaster,
    product_id: int,
    quantity,
    unit_price,
    *,
    parent_line_id: int | None,
    allow_backorder: bool,
    actor: str,
    **fields,
) -> dict:
    if trade.trade_type != TRADE_SALE:
        raise InvalidOperation(
            f"Trade {trade.id} is a {trade.trade_type} trade, not a sale",
            details={"trade_id": trade.id},
        )
    get_product(product_id)
    quantity = quantize_quantity(quantity)
    if quantity == 0:
        raise InvalidOperation("Sale quantity must be non-zero")

    if quantity < 0:
        line = register_return_locked(
            trade, product_id, quantity, unit_price,
            parent_line_id=parent_line_id, actor=actor, **fields,
        )
        return {
            "line": line,
            "matches": [],
            "cost_basis": line.cost_basis,
            "matching_status": line.matching_status,
            "partial": False,
        }

    if parent_line_id is not None:
        raise InvalidOperation("Only return lines may reference a parent line")

    line = add_line(trade, product_id, quantity, unit_price, **fields)
    result: AllocationResult = _allocate_locked(line, allow_backorder=allow_backorder, actor=actor)
    return {
        "line": line,
        "matches": result.matches,
        "cost_basis": result.cost_basis,
        "matching_status": result.matching_status,
        "partial": result.partial,
    }


def register_sale_line(
    trade_id: int,
    product_id: int,
    quantity,
    unit_price,
    *,
    parent_line_id: int | None = None,
    allow_backorder: bool | None = None,
    actor: str | None = None,
    **fields,
) -> dict:
    """
    Register a sale line and allocate it in the same transaction.

    Negative quantity registers a customer return instead.
    Returns {line, matches, cost_basis, matching_status, partial}.
    """
    fields = _line_fields(fields)
    backorder = _resolve_backorder(allow_backorder)
    actor = _actor(actor)

    def _op():
        trade = get_trade(trade_id, lock=True)
        result = _register_sale_locked(
            trade, product_id, quantity, unit_price,
            parent_line_id=parent_line_id, allow_backorder=backorder, actor=actor, **fields,
        )
        db.session.commit()
        return result

    return run_with_retry(_op)


def register_line_locked(trade: TradeMaster, values: dict, *, allow_backorder: bool, actor: str):
    """Dispatch on trade type; used when a line is recreated after an edit."""
    values = dict(values)
    product_id = values.pop("product_id")
    quantity = values.pop("quantity")
    unit_price = values.pop("unit_price", 0)
    parent_line_id = values.pop("parent_line_id", None)
    fields = _line_fields(values)

    if trade.trade_type == TRADE_PURCHASE:
        line, _ = _register_purchase_locked(
            trade, product_id, quantity, unit_price,
            parent_line_id=parent_line_id, actor=actor, **fields,
        )
        return line
    if trade.trade_type == TRADE_SALE:
        return _register_sale_locked(
            trade, product_id, quantity, unit_price,
            parent_line_id=parent_line_id, allow_backorder=allow_backorder, actor=actor, **fields,
        )["line"]
    raise InvalidOperation(
        "Production lines are created by produce(), not edited",
        details={"trade_id": trade.id},
    )


def delete_line(line_id: int, *, actor: str | None = None) -> None:
    from .reversal_service import reverse_line

    reverse_line(line_id, actor=actor)


def trade_summary(trade_id: int) -> dict:
    trade = get_trade(trade_id)
    data = trade.to_dict()
    data["lines"] = [line.to_dict() for line in trade.lines]
    data["total_quantity"] = str(sum((to_decimal(l.quantity) for l in trade.lines), to_decimal(0)))
    data["total_amount"] = str(quantize_cost(
        sum((to_decimal(l.quantity) * to_decimal(l.unit_price) for l in trade.lines), to_decimal(0))
    ))
    return data
