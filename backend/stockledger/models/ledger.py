from __future__ import annotations

import enum

from sqlalchemy import event

from ..extensions import db
from ..errors import ImmutableMovementError
from stockledger.time_utils import to_utc_z


class MovementType(str, enum.Enum):
    """
    Closed set of ledger movement kinds.

    Sign convention (enforced by the recorder):
    - RESTOCK, RETURN: quantity > 0
    - SALE, SHRINKAGE: quantity < 0
    - ADJUSTMENT: either sign (manual correction)
    """
    RESTOCK = "RESTOCK"
    SALE = "SALE"
    ADJUSTMENT = "ADJUSTMENT"
    SHRINKAGE = "SHRINKAGE"
    RETURN = "RETURN"

    @property
    def required_sign(self) -> int:
        """+1 or -1 for a fixed direction, 0 when either direction is allowed."""
        if self in (MovementType.RESTOCK, MovementType.RETURN):
            return 1
        if self in (MovementType.SALE, MovementType.SHRINKAGE):
            return -1
        if self is MovementType.ADJUSTMENT:
            return 0
        raise AssertionError(f"unhandled movement type {self!r}")

    def accepts(self, quantity: int) -> bool:
        sign = self.required_sign
        if sign == 0:
            return quantity != 0
        return quantity * sign > 0

    @classmethod
    def parse(cls, value) -> "MovementType":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise ValueError(f"unknown movement type: {value!r}")


class StockMovement(db.Model):
    """
    Immutable stock ledger entry.

    INVARIANTS:
    - new_stock = previous_stock + quantity (DB check constraint too)
    - quantity != 0
    - Rows are never updated or deleted (ORM guards below)

    TIME:
    - occurred_at is the logical event time (may be historical / simulated)
    - created_at is system write time (DB default)

    reference_id is a plain lookup value (the causing sale transaction id),
    not a relationship: the ledger never owns or cascades from sales.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("new_stock = previous_stock + quantity", name="ck_movements_chain"),
        db.CheckConstraint("quantity <> 0", name="ck_movements_nonzero"),
        db.Index("ix_movements_variant_occurred", "variant_id", "occurred_at"),
        db.Index("ix_movements_variant_type", "variant_id", "type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=False, index=True)

    type = db.Column(
        db.Enum(MovementType, native_enum=False, length=16, name="movement_type"),
        nullable=False,
        index=True,
    )

    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True, index=True)
    user_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    variant = db.relationship("Variant", backref=db.backref("movements", lazy="dynamic"))

    def __repr__(self) -> str:
        return (
            f"<StockMovement id={self.id} variant_id={self.variant_id} type={self.type.value} "
            f"{self.previous_stock}{self.quantity:+d}={self.new_stock}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "type": self.type.value,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reason": self.reason,
            "reference_id": self.reference_id,
            "user_id": self.user_id,
            "notes": self.notes,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockMovement, "before_update")
def _prevent_movement_update(mapper, connection, target):
    raise ImmutableMovementError(
        f"Stock movements are append-only; cannot modify movement {target.id}",
        details={"movement_id": target.id},
    )


@event.listens_for(StockMovement, "before_delete")
def _prevent_movement_delete(mapper, connection, target):
    raise ImmutableMovementError(
        f"Stock movements are append-only; cannot delete movement {target.id}",
        details={"movement_id": target.id},
    )
