# Overview: Read-only lookups into master data (products, companies).

from __future__ import annotations

from ..extensions import db
from ..models import Product, Company
from ..errors import ProductNotFound


def get_product(product_id: int, *, require_active: bool = False) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})
    if require_active and not product.is_active:
        raise ProductNotFound(f"Product {product_id} is inactive", details={"product_id": product_id})
    return product


def company_name(company_id: int | None) -> str | None:
    if company_id is None:
        return None
    company = db.session.get(Company, company_id)
    return company.name if company else None
