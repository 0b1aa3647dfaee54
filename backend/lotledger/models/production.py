from __future__ import annotations

from ..extensions import db
from ..decimal_utils import to_json_decimal
from ..time_utils import to_utc_z, utcnow


PRODUCTION_ACTIVE = "ACTIVE"
# Output line was reversed on its own; inputs stay consumed until the
# production itself is reversed.
PRODUCTION_OUTPUT_REMOVED = "OUTPUT_REMOVED"


class ProductionRecord(db.Model):
    __tablename__ = "production_records"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    output_lot_id = db.Column(db.Integer, db.ForeignKey("lots.id"), nullable=True, index=True)
    output_line_id = db.Column(db.Integer, db.ForeignKey("trade_lines.id"), nullable=True, index=True)
    trade_master_id = db.Column(db.Integer, db.ForeignKey("trade_masters.id"), nullable=True, index=True)

    additional_cost = db.Column(db.Numeric(14, 4), nullable=False, default=0)
    memo = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=PRODUCTION_ACTIVE)
    actor = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    trade = db.relationship("TradeMaster")

    inputs = db.relationship(
        "ProductionInput",
        backref="production",
        lazy=True,
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "output_lot_id": self.output_lot_id,
            "output_line_id": self.output_line_id,
            "trade_master_id": self.trade_master_id,
            "additional_cost": to_json_decimal(self.additional_cost),
            "memo": self.memo,
            "status": self.status,
            "actor": self.actor,
            "created_at": to_utc_z(self.created_at),
            "inputs": [i.to_dict() for i in self.inputs],
        }


class ProductionInput(db.Model):
    __tablename__ = "production_inputs"
    __table_args__ = (
        db.CheckConstraint("consumed_quantity > 0", name="ck_production_inputs_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    production_id = db.Column(db.Integer, db.ForeignKey("production_records.id"), nullable=False, index=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id"), nullable=False, index=True)
    consumed_quantity = db.Column(db.Numeric(14, 3), nullable=False)

    def to_dict(self) -> dict:
        return {
            "lot_id": self.lot_id,
            "consumed_quantity": to_json_decimal(self.consumed_quantity),
        }
