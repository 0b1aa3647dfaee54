from __future__ import annotations

from ..extensions import db
from ..decimal_utils import ZERO, quantize_quantity, to_json_decimal
from ..time_utils import to_iso_date, to_utc_z, utcnow


LOT_AVAILABLE = "AVAILABLE"
LOT_DEPLETED = "DEPLETED"
LOT_CANCELLED = "CANCELLED"

# Match kinds: SALE and PURCHASE_RETURN consume from the lot, RETURN restores to it
MATCH_KIND_SALE = "SALE"
MATCH_KIND_RETURN = "RETURN"
MATCH_KIND_PURCHASE_RETURN = "PURCHASE_RETURN"
CONSUMING_MATCH_KINDS = (MATCH_KIND_SALE, MATCH_KIND_PURCHASE_RETURN)

ADJUSTMENT_TYPES = ("DISPOSAL", "LOSS", "CORRECTION")


class Lot(db.Model):
    """
    One acquisition of a product (purchase or production output).

    Invariants:
    - 0 <= remaining_quantity <= original_quantity
    - original_quantity never changes after creation
    - CANCELLED is only set explicitly and never cleared automatically
    """
    __tablename__ = "lots"
    __table_args__ = (
        db.CheckConstraint("remaining_quantity >= 0", name="ck_lots_remaining_nonnegative"),
        db.CheckConstraint("original_quantity > 0", name="ck_lots_original_positive"),
        db.Index("ix_lots_fifo", "product_id", "status", "acquisition_date", "display_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Line that registered the lot (purchase line or production output line)
    trade_line_id = db.Column(db.Integer, db.ForeignKey("trade_lines.id"), nullable=True, index=True)

    # Provenance
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=True, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)
    shipper_location = db.Column(db.String(255), nullable=True)
    sender = db.Column(db.String(255), nullable=True)

    acquisition_date = db.Column(db.Date, nullable=False, index=True)
    original_quantity = db.Column(db.Numeric(14, 3), nullable=False)
    remaining_quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_cost = db.Column(db.Numeric(14, 4), nullable=False, default=0)

    total_weight = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    weight_unit = db.Column(db.String(16), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=LOT_AVAILABLE, index=True)

    # Insertion order; FIFO tiebreak for lots with the same acquisition date
    display_order = db.Column(db.Integer, nullable=False, default=1)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def unit_weight(self):
        if not self.original_quantity:
            return ZERO
        return (self.total_weight or ZERO) / self.original_quantity

    def weight_for(self, quantity):
        return quantize_quantity(self.unit_weight * quantity)

    @property
    def remaining_weight(self):
        return self.weight_for(self.remaining_quantity)

    def __repr__(self) -> str:
        return (
            f"<Lot id={self.id} product_id={self.product_id} "
            f"remaining={self.remaining_quantity}/{self.original_quantity} status={self.status}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "trade_line_id": self.trade_line_id,
            "company_id": self.company_id,
            "warehouse_id": self.warehouse_id,
            "shipper_location": self.shipper_location,
            "sender": self.sender,
            "acquisition_date": to_iso_date(self.acquisition_date),
            "original_quantity": to_json_decimal(self.original_quantity),
            "remaining_quantity": to_json_decimal(self.remaining_quantity),
            "unit_cost": to_json_decimal(self.unit_cost),
            "total_weight": to_json_decimal(self.total_weight),
            "weight_unit": self.weight_unit,
            "status": self.status,
            "display_order": self.display_order,
            "created_at": to_utc_z(self.created_at),
        }


class Match(db.Model):
    """Join between a trade line and a lot with the quantity moved between them."""
    __tablename__ = "matches"
    __table_args__ = (
        db.CheckConstraint("matched_quantity > 0", name="ck_matches_quantity_positive"),
        db.Index("ix_matches_line_kind", "line_id", "kind"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    line_id = db.Column(db.Integer, db.ForeignKey("trade_lines.id"), nullable=False, index=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id"), nullable=False, index=True)
    matched_quantity = db.Column(db.Numeric(14, 3), nullable=False)
    kind = db.Column(db.String(16), nullable=False, default=MATCH_KIND_SALE)

    matched_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    actor = db.Column(db.String(64), nullable=True)

    lot = db.relationship("Lot")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_id": self.line_id,
            "lot_id": self.lot_id,
            "matched_quantity": to_json_decimal(self.matched_quantity),
            "kind": self.kind,
            "matched_at": to_utc_z(self.matched_at),
            "actor": self.actor,
        }


class AggregateStock(db.Model):
    """
    Per-product running totals.

    Derived from the lot store and rebuildable at any time; never consulted
    for allocation decisions.
    """
    __tablename__ = "aggregate_stock"

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), primary_key=True)
    quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    weight = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    last_unit_cost = db.Column(db.Numeric(14, 4), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": to_json_decimal(self.quantity),
            "weight": to_json_decimal(self.weight),
            "last_unit_cost": to_json_decimal(self.last_unit_cost),
            "updated_at": to_utc_z(self.updated_at),
        }


class LotAdjustment(db.Model):
    """Manual disposal/loss/count correction applied directly to one lot."""
    __tablename__ = "lot_adjustments"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id", ondelete="CASCADE"), nullable=False, index=True)
    adjustment_type = db.Column(db.String(16), nullable=False)
    quantity_change = db.Column(db.Numeric(14, 3), nullable=False)
    before_quantity = db.Column(db.Numeric(14, 3), nullable=False)
    after_quantity = db.Column(db.Numeric(14, 3), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    actor = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lot_id": self.lot_id,
            "adjustment_type": self.adjustment_type,
            "quantity_change": to_json_decimal(self.quantity_change),
            "before_quantity": to_json_decimal(self.before_quantity),
            "after_quantity": to_json_decimal(self.after_quantity),
            "reason": self.reason,
            "actor": self.actor,
            "created_at": to_utc_z(self.created_at),
        }
