from __future__ import annotations

from ..extensions import db
from ..decimal_utils import to_json_decimal
from ..time_utils import to_iso_date, to_utc_z


TRADE_PURCHASE = "PURCHASE"
TRADE_SALE = "SALE"
TRADE_PRODUCTION = "PRODUCTION"
TRADE_TYPES = (TRADE_PURCHASE, TRADE_SALE, TRADE_PRODUCTION)

TRADE_ACTIVE = "ACTIVE"
TRADE_CANCELLED = "CANCELLED"

MATCH_PENDING = "PENDING"
MATCH_PARTIAL = "PARTIAL"
MATCH_MATCHED = "MATCHED"


class TradeMaster(db.Model):
    """
    Trade document header (purchase, sale or production job).

    Child lines depend on trade_type for every quantity rule, so reversal code
    snapshots these fields before touching any child.
    """
    __tablename__ = "trade_masters"
    __table_args__ = (
        db.Index("ix_trade_masters_type_date", "trade_type", "trade_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    trade_number = db.Column(db.String(64), nullable=True, unique=True)
    trade_type = db.Column(db.String(16), nullable=False, index=True)
    trade_date = db.Column(db.Date, nullable=False, index=True)

    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=True, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=TRADE_ACTIVE, index=True)
    notes = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    company = db.relationship("Company")
    warehouse = db.relationship("Warehouse")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trade_number": self.trade_number,
            "trade_type": self.trade_type,
            "trade_date": to_iso_date(self.trade_date),
            "company_id": self.company_id,
            "warehouse_id": self.warehouse_id,
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class TradeLine(db.Model):
    """
    One product line of a trade.

    quantity is signed: positive for purchases, sales and production output,
    negative for returns. parent_line_id is set only on returns and points at
    the line being reduced.
    """
    __tablename__ = "trade_lines"
    __table_args__ = (
        db.Index("ix_trade_lines_product_status", "product_id", "matching_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    trade_master_id = db.Column(db.Integer, db.ForeignKey("trade_masters.id"), nullable=False, index=True)
    seq_no = db.Column(db.Integer, nullable=False, default=1)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_price = db.Column(db.Numeric(14, 4), nullable=False, default=0)

    total_weight = db.Column(db.Numeric(14, 3), nullable=True)
    weight_unit = db.Column(db.String(16), nullable=True)
    shipper_location = db.Column(db.String(255), nullable=True)
    sender = db.Column(db.String(255), nullable=True)

    parent_line_id = db.Column(db.Integer, db.ForeignKey("trade_lines.id"), nullable=True, index=True)

    matching_status = db.Column(db.String(16), nullable=False, default=MATCH_PENDING, index=True)

    # Realized cost basis: weighted average of matched lot costs
    cost_basis = db.Column(db.Numeric(14, 4), nullable=True)
    cost_basis_missing = db.Column(db.Boolean, nullable=False, default=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    trade = db.relationship("TradeMaster", backref=db.backref("lines", lazy=True, order_by="TradeLine.seq_no"))
    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_return(self) -> bool:
        return self.quantity is not None and self.quantity < 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trade_master_id": self.trade_master_id,
            "seq_no": self.seq_no,
            "product_id": self.product_id,
            "quantity": to_json_decimal(self.quantity),
            "unit_price": to_json_decimal(self.unit_price),
            "total_weight": to_json_decimal(self.total_weight),
            "weight_unit": self.weight_unit,
            "shipper_location": self.shipper_location,
            "sender": self.sender,
            "parent_line_id": self.parent_line_id,
            "matching_status": self.matching_status,
            "cost_basis": to_json_decimal(self.cost_basis),
            "cost_basis_missing": self.cost_basis_missing,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }
