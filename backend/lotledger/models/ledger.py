from __future__ import annotations

from ..extensions import db
from ..decimal_utils import to_json_decimal
from ..time_utils import to_iso_date, to_utc_z, utcnow


LOG_IN = "IN"
LOG_OUT = "OUT"
LOG_ADJUST = "ADJUST"


class TransactionLogEntry(db.Model):
    """
    Append-only stock movement journal.

    quantity is the signed delta applied to the aggregate; before/after are the
    aggregate quantity around it. Rows tied to a line are removed only together
    with that line.
    """
    __tablename__ = "transaction_log"
    __table_args__ = (
        db.Index("ix_transaction_log_product_date", "product_id", "transaction_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_date = db.Column(db.Date, nullable=False, index=True)
    transaction_type = db.Column(db.String(16), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    weight = db.Column(db.Numeric(14, 3), nullable=True)
    unit_price = db.Column(db.Numeric(14, 4), nullable=True)

    before_quantity = db.Column(db.Numeric(14, 3), nullable=False)
    after_quantity = db.Column(db.Numeric(14, 3), nullable=False)

    line_id = db.Column(db.Integer, db.ForeignKey("trade_lines.id", ondelete="CASCADE"), nullable=True, index=True)
    reference_number = db.Column(db.String(64), nullable=True)

    actor = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_date": to_iso_date(self.transaction_date),
            "transaction_type": self.transaction_type,
            "product_id": self.product_id,
            "quantity": to_json_decimal(self.quantity),
            "weight": to_json_decimal(self.weight),
            "unit_price": to_json_decimal(self.unit_price),
            "before_quantity": to_json_decimal(self.before_quantity),
            "after_quantity": to_json_decimal(self.after_quantity),
            "line_id": self.line_id,
            "reference_number": self.reference_number,
            "actor": self.actor,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
