from __future__ import annotations

from ..extensions import db
from ..decimal_utils import to_json_decimal
from ..time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data (outbound collaborator).

    The ledger only reads it: existence checks, and the unit weight used when a
    purchase line does not carry its own total weight.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    grade = db.Column(db.String(64), nullable=True)

    # Weight of one unit, in weight_unit
    weight = db.Column(db.Numeric(14, 3), nullable=True)
    weight_unit = db.Column(db.String(16), nullable=False, default="kg")

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "grade": self.grade,
            "weight": to_json_decimal(self.weight),
            "weight_unit": self.weight_unit,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Company(db.Model):
    """Supplier/customer master. Used only for lot provenance and log notes."""
    __tablename__ = "companies"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


class Warehouse(db.Model):
    __tablename__ = "warehouses"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}
