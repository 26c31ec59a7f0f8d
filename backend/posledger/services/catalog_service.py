# Overview: Product lookup for the ledger; product CRUD lives with the catalog collaborator.

from __future__ import annotations

from ..extensions import db
from ..errors import NotFound, ValidationError
from ..models import Product


def get_product(product_id: int, *, require_active: bool = False) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound(f"Product {product_id} not found", details={"product_id": product_id})
    if require_active and not product.is_active:
        raise NotFound(f"Product {product_id} is inactive", details={"product_id": product_id})
    return product


def create_product(*, name: str, unit: str = "pcs", min_stock: int = 0) -> Product:
    """Seeding helper used by the CLI and tests."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if min_stock < 0:
        raise ValidationError("min_stock must be >= 0")

    product = Product(name=name, unit=unit, min_stock=min_stock, is_active=True)
    db.session.add(product)
    db.session.commit()
    return product
