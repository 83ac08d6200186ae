from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data (owned by the catalog subsystem).

    The ledger only reads name and SKU, for free-text search over movements.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "created_at": to_utc_z(self.created_at),
        }


class Variant(db.Model):
    """
    A sellable SKU-level unit of a product.

    STOCK COUNTER:
    - `stock` is the denormalized on-hand quantity. It must always equal the
      replay (sum of quantity) of this variant's StockMovement rows.
    - Only services.movement_service writes `stock` and `last_restocked`.
    - `version_id` makes concurrent read-modify-write of `stock` fail with
      StaleDataError instead of silently losing an update.
    """
    __tablename__ = "variants"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_variants_stock_nonnegative"),
        db.Index("ix_variants_product_stock", "product_id", "stock"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    stock = db.Column(db.Integer, nullable=False, default=0)
    reorder_point = db.Column(db.Integer, nullable=False, default=10)
    last_restocked = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("variants", lazy=True, order_by="Variant.id"))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Variant id={self.id} sku={self.sku!r} stock={self.stock}>"

    @property
    def is_below_reorder_point(self) -> bool:
        return self.stock <= self.reorder_point

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sku": self.sku,
            "price_cents": self.price_cents,
            "stock": self.stock,
            "reorder_point": self.reorder_point,
            "last_restocked": to_utc_z(self.last_restocked),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
