from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from .decimal_utils import to_decimal
from .time_utils import parse_iso_date


class ValidationError(ValueError):
    """400-level input problem."""


def require_fields(data: dict | None, *fields: str) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("JSON body required")
    missing = [f for f in fields if data.get(f) is None]
    if missing:
        raise ValidationError(f"missing required fields: {', '.join(missing)}")
    return data


def parse_int(data: dict, key: str, *, required: bool = False) -> int | None:
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    # bool is a subclass of int
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"{key} must be an integer")


def parse_decimal(data: dict, key: str, *, required: bool = False, default: Any = None) -> Decimal | None:
    value = data.get(key, default)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if isinstance(value, str):
        stripped = value.strip()
        # Reject scientific notation (e.g., "1e15")
        if not stripped or "e" in stripped.lower():
            raise ValidationError(f"{key} must be a plain decimal number")
        value = stripped
    try:
        result = to_decimal(value)
    except ValueError:
        raise ValidationError(f"{key} must be a decimal number")
    if not result.is_finite():
        raise ValidationError(f"{key} must be finite")
    return result


def parse_date(data: dict, key: str) -> date | None:
    try:
        return parse_iso_date(data.get(key))
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 date")


def parse_bool(data: dict, key: str) -> bool | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "1", "yes"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "0", "no"}:
        return False
    raise ValidationError(f"{key} must be a boolean")
