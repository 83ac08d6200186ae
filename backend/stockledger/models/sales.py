from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


TRANSACTION_STATUS_PENDING = "pending"
TRANSACTION_STATUS_COMPLETED = "completed"
TRANSACTION_STATUS_PARTIALLY_REFUNDED = "partially_refunded"
TRANSACTION_STATUS_REFUNDED = "refunded"

REFUNDABLE_STATUSES = (TRANSACTION_STATUS_COMPLETED, TRANSACTION_STATUS_PARTIALLY_REFUNDED)


class SaleTransaction(db.Model):
    """
    Sale header (owned by the sales subsystem, consumed by the ledger).

    STATUS (one-directional for refunds):
        completed -> partially_refunded -> refunded (terminal)
    `pending` exists for held sales and is never reached from a refund.
    """
    __tablename__ = "sale_transactions"
    __table_args__ = (
        db.Index("ix_sale_transactions_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(32), nullable=False, default=TRANSACTION_STATUS_COMPLETED, index=True)
    user_id = db.Column(db.Integer, nullable=True)

    # Business time of the sale; refund window is measured from here
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "SaleItem",
        backref="transaction",
        lazy=True,
        order_by="SaleItem.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def total_cents(self) -> int:
        return sum(item.line_total_cents for item in self.items)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
            "total_cents": self.total_cents,
            "version_id": self.version_id,
            "items": [item.to_dict() for item in self.items],
        }


class SaleItem(db.Model):
    """
    Sale line. refunded_quantity only ever grows, bounded by quantity.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        db.CheckConstraint(
            "refunded_quantity >= 0 AND refunded_quantity <= quantity",
            name="ck_sale_items_refunded_bounds",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("sale_transactions.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=True, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    # Discounted per-unit price, when a discount was applied at the register
    final_price_cents = db.Column(db.Integer, nullable=True)

    refunded_quantity = db.Column(db.Integer, nullable=False, default=0)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def effective_unit_price_cents(self) -> int:
        if self.final_price_cents is not None:
            return self.final_price_cents
        return self.unit_price_cents

    @property
    def refundable_quantity(self) -> int:
        return self.quantity - (self.refunded_quantity or 0)

    @property
    def is_fully_refunded(self) -> bool:
        return self.refunded_quantity == self.quantity

    @property
    def line_total_cents(self) -> int:
        return self.effective_unit_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "final_price_cents": self.final_price_cents,
            "refunded_quantity": self.refunded_quantity,
            "refundable_quantity": self.refundable_quantity,
            "refunded_at": to_utc_z(self.refunded_at),
            "created_at": to_utc_z(self.created_at),
        }
