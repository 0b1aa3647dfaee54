# Overview: Production transformer; consumes input lots and emits one costed output lot.

from __future__ import annotations

from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Iterable

from flask import current_app

from ..extensions import db
from ..models import Match, ProductionInput, ProductionRecord, TradeLine
from ..models.inventory import LOT_AVAILABLE, LOT_CANCELLED
from ..models.ledger import LOG_ADJUST, LOG_IN, LOG_OUT
from ..models.production import PRODUCTION_ACTIVE
from ..models.trades import MATCH_MATCHED, TRADE_PRODUCTION
from ..errors import (
    InsufficientLotQuantity,
    InvalidOperation,
    LotInUse,
    ProductionNotFound,
)
from ..decimal_utils import ZERO, quantize_cost, quantize_quantity, to_decimal
from ..time_utils import today
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import delete_line_entries
from .line_service import add_line
from .lot_service import adjust_remaining, create_lot, delete_lot, get_lot
from .master_service import get_product
from .stock_service import post_movement
from .trade_service import create_trade_locked
"""
Production Invariants (authoritative)

- All inputs are validated under row locks before any lot is touched; one
  short input fails the whole production.
- Output unit cost = (SUM(q * input unit cost) + additional cost) / output quantity,
  rounded to 4 decimal places.
- An input lot referenced by a production input cannot be deleted.
- Reversal is refused while the output lot has matches; it restores every
  input, removes the output lot, its line and the record.
"""


def _merge_inputs(inputs: Iterable) -> "OrderedDict[int, Decimal]":
    """Accept (lot_id, qty) pairs or {"lot_id", "quantity"} dicts; duplicate lots are summed."""
    merged: "OrderedDict[int, Decimal]" = OrderedDict()
    for item in inputs:
        if isinstance(item, dict):
            lot_id, quantity = item.get("lot_id"), item.get("quantity")
        else:
            lot_id, quantity = item
        if lot_id is None or quantity is None:
            raise InvalidOperation("Each production input needs lot_id and quantity")
        quantity = quantize_quantity(quantity)
        if quantity <= 0:
            raise InvalidOperation(
                f"Input quantity for lot {lot_id} must be positive",
                details={"lot_id": lot_id, "quantity": str(quantity)},
            )
        merged[int(lot_id)] = merged.get(int(lot_id), ZERO) + quantity
    if not merged:
        raise InvalidOperation("Production needs at least one input lot")
    return merged


def get_production(production_id: int, *, lock: bool = False) -> ProductionRecord:
    q = db.session.query(ProductionRecord).filter_by(id=production_id)
    if lock:
        q = lock_for_update(q)
    record = q.first()
    if record is None:
        raise ProductionNotFound(
            f"Production {production_id} not found",
            details={"production_id": production_id},
        )
    return record


def _produce_inner(
    inputs,
    output_product_id: int,
    output_quantity,
    additional_cost,
    *,
    memo: str | None,
    actor: str,
    production_date: date,
) -> ProductionRecord:
    output_product = get_product(output_product_id)
    output_quantity = quantize_quantity(output_quantity)
    if output_quantity <= 0:
        raise InvalidOperation("Output quantity must be positive")
    additional_cost = quantize_cost(additional_cost or 0)
    if additional_cost < 0:
        raise InvalidOperation("Additional cost cannot be negative")

    merged = _merge_inputs(inputs)

    # Lock every input in id order, then validate them all before mutating
    lots = []
    for lot_id in sorted(merged):
        lot = get_lot(lot_id, lock=True)
        quantity = merged[lot_id]
        if lot.status != LOT_AVAILABLE:
            raise InvalidOperation(f"Lot {lot.id} is {lot.status}", details={"lot_id": lot.id})
        if quantity > lot.remaining_quantity:
            raise InsufficientLotQuantity(
                f"Lot {lot.id} has {lot.remaining_quantity} remaining; production needs {quantity}",
                details={"lot_id": lot.id, "remaining": str(lot.remaining_quantity), "requested": str(quantity)},
            )
        lots.append((lot, quantity))

    input_cost = sum((q * to_decimal(lot.unit_cost) for lot, q in lots), ZERO)
    unit_cost = quantize_cost((input_cost + additional_cost) / output_quantity)

    trade = create_trade_locked(TRADE_PRODUCTION, production_date, actor=actor, notes=memo)

    for lot, quantity in lots:
        adjust_remaining(lot.id, -quantity)
        post_movement(
            transaction_type=LOG_OUT,
            product_id=lot.product_id,
            quantity_delta=-quantity,
            weight_delta=-lot.weight_for(quantity),
            reference_number=trade.trade_number,
            unit_price=lot.unit_cost,
            actor=actor,
            transaction_date=production_date,
            note=f"Consumed by production into product {output_product.id}",
        )

    line = add_line(trade, output_product.id, output_quantity, unit_cost, matching_status=MATCH_MATCHED)
    line.cost_basis = unit_cost
    output_lot = create_lot(
        output_product.id,
        production_date,
        output_quantity,
        unit_cost,
        trade_line_id=line.id,
    )
    line.total_weight = output_lot.total_weight
    line.weight_unit = output_lot.weight_unit

    post_movement(
        transaction_type=LOG_IN,
        product_id=output_product.id,
        quantity_delta=output_quantity,
        weight_delta=output_lot.total_weight,
        line_id=line.id,
        reference_number=trade.trade_number,
        unit_price=unit_cost,
        unit_cost=unit_cost,
        actor=actor,
        transaction_date=production_date,
        note=memo or "Production output",
    )

    record = ProductionRecord(
        output_lot_id=output_lot.id,
        output_line_id=line.id,
        trade_master_id=trade.id,
        additional_cost=additional_cost,
        memo=memo,
        status=PRODUCTION_ACTIVE,
        actor=actor,
    )
    for lot, quantity in lots:
        record.inputs.append(ProductionInput(lot_id=lot.id, consumed_quantity=quantity))
    db.session.add(record)
    db.session.flush()
    return record


def produce(
    inputs,
    output_product_id: int,
    output_quantity,
    additional_cost=0,
    *,
    memo: str | None = None,
    actor: str | None = None,
    production_date: date | None = None,
) -> ProductionRecord:
    """
    Consume input lots and create the output lot, all or nothing.

    inputs: [(lot_id, quantity), ...] or [{"lot_id": ..., "quantity": ...}, ...]
    """
    actor = actor or current_app.config.get("LEDGER_DEFAULT_ACTOR", "system")
    production_date = production_date or today()

    def _op():
        record = _produce_inner(
            inputs,
            output_product_id,
            output_quantity,
            additional_cost,
            memo=memo,
            actor=actor,
            production_date=production_date,
        )
        db.session.commit()
        current_app.logger.info(
            "Production %s: %s x product %s from %d input lot(s)",
            record.id, output_quantity, output_product_id, len(record.inputs),
        )
        return record

    return run_with_retry(_op)


def reverse_production(production_id: int, *, actor: str | None = None) -> None:
    """
    Undo a production: restore every input lot and remove the output.

    Refused with LotInUse once any of the output has been matched.
    """
    actor = actor or current_app.config.get("LEDGER_DEFAULT_ACTOR", "system")

    def _op():
        record = get_production(production_id, lock=True)
        reference = record.trade.trade_number if record.trade_master_id else None

        if record.output_lot_id is not None:
            matched = db.session.query(Match.id).filter(Match.lot_id == record.output_lot_id).first()
            if matched is not None:
                raise LotInUse(
                    f"Output lot {record.output_lot_id} of production {record.id} has been matched",
                    details={"production_id": record.id, "lot_id": record.output_lot_id},
                )

        for item in sorted(record.inputs, key=lambda i: i.lot_id):
            lot = adjust_remaining(item.lot_id, item.consumed_quantity)
            # Cancelled lots are outside the aggregate
            if lot.status == LOT_CANCELLED:
                continue
            post_movement(
                transaction_type=LOG_ADJUST,
                product_id=lot.product_id,
                quantity_delta=item.consumed_quantity,
                weight_delta=lot.weight_for(item.consumed_quantity),
                reference_number=reference,
                unit_price=lot.unit_cost,
                actor=actor,
                note=f"Reversal of production {record.id}: input restored",
            )
        output_lot_id = record.output_lot_id
        output_line_id = record.output_line_id
        trade = record.trade

        # Inputs must go before the lots they reference can be considered free
        record.inputs.clear()
        record.output_lot_id = None
        record.output_line_id = None
        db.session.flush()

        if output_lot_id is not None:
            delete_lot(
                output_lot_id,
                actor=actor,
                reference_number=reference,
                note=f"Reversal of production {record.id}: output removed",
            )
        if output_line_id is not None:
            line = db.session.get(TradeLine, output_line_id)
            if line is not None:
                delete_line_entries(line.id)
                db.session.delete(line)
        db.session.delete(record)
        db.session.flush()

        if trade is not None:
            db.session.expire(trade, ["lines"])
            if not trade.lines:
                db.session.delete(trade)
        db.session.commit()
        current_app.logger.info("Reversed production %s", production_id)

    run_with_retry(_op)


def list_productions(limit: int = 100) -> list[ProductionRecord]:
    return (
        db.session.query(ProductionRecord)
        .order_by(ProductionRecord.created_at.desc(), ProductionRecord.id.desc())
        .limit(limit)
        .all()
    )
