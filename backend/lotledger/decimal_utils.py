"""
Quantity and money helpers.

All quantities, weights and costs are Decimals end to end. Storage scales:
- quantity / weight: 3 decimal places
- unit cost / cost basis: 4 decimal places
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

ZERO = Decimal("0")
QUANTITY_EXP = Decimal("0.001")
COST_EXP = Decimal("0.0001")


def to_decimal(value) -> Decimal:
    """Coerce int/str/float/Decimal to Decimal (floats go through str)."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("boolean is not a quantity")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"invalid decimal value: {value!r}") from exc


def quantize_quantity(value) -> Decimal:
    return to_decimal(value).quantize(QUANTITY_EXP, rounding=ROUND_HALF_UP)


def quantize_cost(value) -> Decimal:
    return to_decimal(value).quantize(COST_EXP, rounding=ROUND_HALF_UP)


def weighted_average(pairs) -> Optional[Decimal]:
    """
    sum(qty * unit_cost) / sum(qty) over (qty, unit_cost) pairs.

    Returns None when the total quantity is zero; callers must flag that
    rather than default to zero.
    """
    total_qty = ZERO
    total_cost = ZERO
    for qty, unit_cost in pairs:
        qty = to_decimal(qty)
        total_qty += qty
        total_cost += qty * to_decimal(unit_cost)
    if total_qty == 0:
        return None
    return quantize_cost(total_cost / total_qty)


def to_json_decimal(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return str(value)
