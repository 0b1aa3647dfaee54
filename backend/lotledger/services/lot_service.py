# Overview: Service-layer operations for lots; the authoritative per-acquisition stock store.

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Lot, LotAdjustment, Match, ProductionInput
from ..models.inventory import (
    ADJUSTMENT_TYPES,
    LOT_AVAILABLE,
    LOT_CANCELLED,
    LOT_DEPLETED,
)
from ..models.ledger import LOG_ADJUST
from ..errors import (
    InsufficientLotQuantity,
    InvalidOperation,
    LotInUse,
    LotNotFound,
)
from ..decimal_utils import quantize_cost, quantize_quantity, to_decimal
from .concurrency import lock_for_update, run_with_retry
from .master_service import get_product
from .stock_service import post_movement
"""
Lot Store Invariants (authoritative)

- A lot is created once, by a purchase line or a production output.
- 0 <= remaining_quantity <= original_quantity at all times.
- Status follows remaining: DEPLETED at zero, AVAILABLE again when restored.
  CANCELLED is never cleared automatically.
- A lot referenced by any match or production input cannot be deleted.
- FIFO order: acquisition_date, then display_order (insertion order), then id.

Functions here never commit; callers own the transaction. adjust_lot() and
cancel_lot() are the exceptions, being complete operations of their own.
"""


def _next_display_order() -> int:
    current = db.session.query(func.coalesce(func.max(Lot.display_order), 0)).scalar()
    return int(current or 0) + 1


def get_lot(lot_id: int, *, lock: bool = False) -> Lot:
    q = db.session.query(Lot).filter_by(id=lot_id)
    if lock:
        q = lock_for_update(q)
    lot = q.first()
    if lot is None:
        raise LotNotFound(f"Lot {lot_id} not found", details={"lot_id": lot_id})
    return lot


def create_lot(
    product_id: int,
    acquisition_date: date,
    quantity,
    unit_cost,
    *,
    total_weight=None,
    weight_unit: str | None = None,
    trade_line_id: int | None = None,
    company_id: int | None = None,
    warehouse_id: int | None = None,
    shipper_location: str | None = None,
    sender: str | None = None,
) -> Lot:
    """
    Register a new lot with remaining == original and status AVAILABLE.

    Weight defaults to product unit weight * quantity when not given.
    """
    product = get_product(product_id)
    quantity = quantize_quantity(quantity)
    if quantity <= 0:
        raise InvalidOperation("Lot quantity must be positive", details={"quantity": str(quantity)})

    if total_weight is None:
        total_weight = to_decimal(product.weight) * quantity

    lot = Lot(
        product_id=product.id,
        trade_line_id=trade_line_id,
        company_id=company_id,
        warehouse_id=warehouse_id,
        shipper_location=shipper_location,
        sender=sender,
        acquisition_date=acquisition_date,
        original_quantity=quantity,
        remaining_quantity=quantity,
        unit_cost=quantize_cost(unit_cost),
        total_weight=quantize_quantity(total_weight),
        weight_unit=weight_unit or product.weight_unit,
        status=LOT_AVAILABLE,
        display_order=_next_display_order(),
    )
    db.session.add(lot)
    db.session.flush()
    return lot


def get_available_lots(product_id: int, *, lock: bool = False) -> list[Lot]:
    """
    Lots with stock left for a product, oldest first.

    Unlocked reads are for display only and reserve nothing; allocation calls
    this with lock=True inside its own transaction.
    """
    q = db.session.query(Lot).filter(
        Lot.product_id == product_id,
        Lot.status == LOT_AVAILABLE,
        Lot.remaining_quantity > 0,
    ).order_by(
        Lot.acquisition_date.asc(),
        Lot.display_order.asc(),
        Lot.id.asc(),
    )
    if lock:
        q = lock_for_update(q)
    return q.all()


def list_lots(*, product_id: int | None = None, include_depleted: bool = False) -> list[Lot]:
    q = db.session.query(Lot)
    if product_id is not None:
        q = q.filter(Lot.product_id == product_id)
    if not include_depleted:
        q = q.filter(Lot.status == LOT_AVAILABLE)
    return q.order_by(
        Lot.product_id.asc(),
        Lot.acquisition_date.asc(),
        Lot.display_order.asc(),
        Lot.id.asc(),
    ).all()


def adjust_remaining(lot_id: int, delta) -> Lot:
    """
    Apply a signed change to a lot's remaining quantity.

    Raises InsufficientLotQuantity below zero; restoring past the original
    quantity is an InvalidOperation. Never touches a CANCELLED status.
    """
    lot = get_lot(lot_id, lock=True)
    delta = to_decimal(delta)
    current = to_decimal(lot.remaining_quantity)
    new_remaining = quantize_quantity(current + delta)

    if new_remaining < 0:
        raise InsufficientLotQuantity(
            f"Lot {lot.id} has {current} remaining; cannot take {-delta}",
            details={"lot_id": lot.id, "remaining": str(current), "requested": str(-delta)},
        )
    if new_remaining > lot.original_quantity:
        raise InvalidOperation(
            f"Lot {lot.id} cannot be restored above its original quantity {lot.original_quantity}",
            details={"lot_id": lot.id, "original": str(lot.original_quantity), "restored_to": str(new_remaining)},
        )

    lot.remaining_quantity = new_remaining
    if lot.status != LOT_CANCELLED:
        if new_remaining == 0:
            lot.status = LOT_DEPLETED
        elif lot.status == LOT_DEPLETED:
            lot.status = LOT_AVAILABLE
    db.session.flush()
    return lot


def lot_usage(lot_id: int) -> dict:
    match_count = db.session.query(func.count(Match.id)).filter(Match.lot_id == lot_id).scalar() or 0
    production_count = (
        db.session.query(func.count(ProductionInput.id))
        .filter(ProductionInput.lot_id == lot_id)
        .scalar()
        or 0
    )
    return {"matches": int(match_count), "production_inputs": int(production_count)}


def delete_lot(
    lot_id: int,
    *,
    actor: str | None = None,
    reference_number: str | None = None,
    note: str | None = None,
) -> None:
    """
    Remove a lot that nothing references.

    The stock it still holds leaves the aggregate through one ADJUST entry.
    """
    lot = get_lot(lot_id, lock=True)
    usage = lot_usage(lot.id)
    if usage["matches"] or usage["production_inputs"]:
        raise LotInUse(
            f"Lot {lot.id} is referenced by {usage['matches']} match(es) and "
            f"{usage['production_inputs']} production input(s)",
            details={"lot_id": lot.id, **usage},
        )

    if lot.status != LOT_CANCELLED and lot.remaining_quantity > 0:
        post_movement(
            transaction_type=LOG_ADJUST,
            product_id=lot.product_id,
            quantity_delta=-lot.remaining_quantity,
            weight_delta=-lot.remaining_weight,
            unit_price=lot.unit_cost,
            reference_number=reference_number,
            actor=actor,
            note=note or f"Lot {lot.id} removed",
        )

    db.session.query(LotAdjustment).filter_by(lot_id=lot.id).delete(synchronize_session=False)
    db.session.delete(lot)
    db.session.flush()


def cancel_lot(lot_id: int, *, actor: str | None = None, reason: str | None = None) -> Lot:
    """Take a lot out of circulation; its remaining stock leaves the aggregate."""
    def _op():
        lot = get_lot(lot_id, lock=True)
        if lot.status == LOT_CANCELLED:
            raise InvalidOperation(f"Lot {lot.id} is already cancelled")
        if lot.remaining_quantity > 0:
            post_movement(
                transaction_type=LOG_ADJUST,
                product_id=lot.product_id,
                quantity_delta=-lot.remaining_quantity,
                weight_delta=-lot.remaining_weight,
                unit_price=lot.unit_cost,
                actor=actor,
                note=reason or f"Lot {lot.id} cancelled",
            )
        lot.status = LOT_CANCELLED
        db.session.commit()
        return lot

    return run_with_retry(_op)


def adjust_lot(
    lot_id: int,
    quantity_change,
    *,
    adjustment_type: str = "CORRECTION",
    reason: str | None = None,
    actor: str | None = None,
) -> LotAdjustment:
    """
    Disposal, loss or count correction on a single lot.

    WHY: physical stock drifts from the books (spoilage, shrinkage, recounts).
    The adjustment goes through the lot so the aggregate stays derivable.
    """
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise InvalidOperation(
            f"adjustment_type must be one of {', '.join(ADJUSTMENT_TYPES)}",
            details={"adjustment_type": adjustment_type},
        )
    quantity_change = quantize_quantity(quantity_change)
    if quantity_change == 0:
        raise InvalidOperation("quantity_change must be non-zero")

    def _op():
        lot = get_lot(lot_id, lock=True)
        if lot.status == LOT_CANCELLED:
            raise InvalidOperation(f"Lot {lot.id} is cancelled")
        before = to_decimal(lot.remaining_quantity)
        adjust_remaining(lot.id, quantity_change)

        adjustment = LotAdjustment(
            lot_id=lot.id,
            adjustment_type=adjustment_type,
            quantity_change=quantity_change,
            before_quantity=before,
            after_quantity=lot.remaining_quantity,
            reason=reason,
            actor=actor,
        )
        db.session.add(adjustment)

        post_movement(
            transaction_type=LOG_ADJUST,
            product_id=lot.product_id,
            quantity_delta=quantity_change,
            weight_delta=lot.weight_for(quantity_change),
            unit_price=lot.unit_cost,
            actor=actor,
            note=f"{adjustment_type} on lot {lot.id}" + (f": {reason}" if reason else ""),
        )
        db.session.commit()
        current_app.logger.info(
            "Lot %s adjusted by %s (%s)", lot.id, quantity_change, adjustment_type
        )
        return adjustment

    return run_with_retry(_op)
