# Overview: Service-layer operations for the transaction log; append and read only.

from __future__ import annotations

from datetime import date
from typing import Optional

from ..extensions import db
from ..models import TransactionLogEntry
from ..decimal_utils import quantize_quantity
from ..time_utils import today
"""
Transaction Log Invariants (authoritative)

- Append-only journal of every quantity-affecting event.
- Entries are written inside the same DB transaction as the movement they record.
- Entries are never updated. They are deleted only together with the line that
  produced them (line_id); reversal entries carry no line_id and survive it.
"""


def append_log(
    *,
    transaction_type: str,
    product_id: int,
    quantity,
    before_quantity,
    after_quantity,
    line_id: int | None = None,
    reference_number: str | None = None,
    unit_price=None,
    weight=None,
    actor: str | None = None,
    note: Optional[str] = None,
    transaction_date: Optional[date] = None,
) -> TransactionLogEntry:
    """Append one log row. Flushes, never commits."""
    entry = TransactionLogEntry(
        transaction_date=transaction_date or today(),
        transaction_type=transaction_type,
        product_id=product_id,
        quantity=quantize_quantity(quantity),
        weight=quantize_quantity(weight) if weight is not None else None,
        unit_price=unit_price,
        before_quantity=quantize_quantity(before_quantity),
        after_quantity=quantize_quantity(after_quantity),
        line_id=line_id,
        reference_number=reference_number,
        actor=actor,
        note=note[:255] if note else note,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def delete_line_entries(line_id: int) -> int:
    """Remove the audit rows of a line that is itself being deleted."""
    return db.session.query(TransactionLogEntry).filter_by(line_id=line_id).delete(
        synchronize_session=False
    )


def list_log(
    *,
    product_id: int | None = None,
    line_id: int | None = None,
    limit: int = 200,
) -> list[TransactionLogEntry]:
    q = db.session.query(TransactionLogEntry)
    if product_id is not None:
        q = q.filter(TransactionLogEntry.product_id == product_id)
    if line_id is not None:
        q = q.filter(TransactionLogEntry.line_id == line_id)
    return q.order_by(
        TransactionLogEntry.transaction_date.desc(),
        TransactionLogEntry.id.desc(),
    ).limit(limit).all()
