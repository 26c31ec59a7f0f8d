from __future__ import annotations

from ..extensions import db
from posledger.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data, owned by the catalog collaborator.

    The ledger only references products by id; min_stock drives the
    low-stock flag on stock listings.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(32), nullable=False, default="pcs")
    min_stock = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "unit": self.unit,
            "min_stock": self.min_stock,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
