from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


PRODUCT_STATUS_ACTIVE = "active"
PRODUCT_STATUSES = ("active", "inactive", "draft", "archived")


class Category(db.Model):
    """Catalog category. Coupons scope by category id."""
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product master data as seen by the order core.

    The catalog owns this row; the order core only reads price/tax/status and
    mutates stock + sold_count through inventory_service.

    STOCK INVARIANTS:
    - stock >= 0 and sold_count >= 0 (check constraints back up the
      conditional UPDATEs in inventory_service)
    - every decrement of stock is paired with an increment of sold_count,
      and release reverses both

    Money is stored in cents, tax rate in basis points (800 = 8%).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        db.CheckConstraint("sold_count >= 0", name="ck_products_sold_non_negative"),
        db.Index("ix_products_category_status", "category_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    image_url = db.Column(db.String(512), nullable=True)

    price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    stock = db.Column(db.Integer, nullable=False, default=0)
    sold_count = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=10)

    status = db.Column(db.String(16), nullable=False, default=PRODUCT_STATUS_ACTIVE, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category", backref=db.backref("products", lazy=True))

    @property
    def is_orderable(self) -> bool:
        return self.status == PRODUCT_STATUS_ACTIVE

    @property
    def stock_status(self) -> str:
        if self.stock <= 0:
            return "out_of_stock"
        if self.stock <= self.low_stock_threshold:
            return "low_stock"
        return "in_stock"

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "sku": self.sku,
            "name": self.name,
            "image_url": self.image_url,
            "price_cents": self.price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "stock": self.stock,
            "sold_count": self.sold_count,
            "low_stock_threshold": self.low_stock_threshold,
            "stock_status": self.stock_status,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
