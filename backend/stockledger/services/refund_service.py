"""
Refund Reconciler

WHY: Refunds reverse sales without touching history. The original SALE
movements stay as they are; each refunded unit goes back to stock through a
new RETURN movement, and the sale lines only accumulate refunded_quantity.

DESIGN PRINCIPLES:
- Validate every requested line before applying any of them
- One call is one DB transaction: line updates, RETURN movements and the
  status change commit together or not at all
- Status only moves forward: completed -> partially_refunded -> refunded
- Refund-window eligibility is the caller's job (see routes/sales.py)

AMOUNTS:
    refunded_amount_cents = sum(q * (final_price_cents or unit_price_cents))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import (
    InvalidRefundRequest,
    RefundExceedsAvailable,
    SaleItemNotFound,
    TransactionNotFound,
    TransactionStateError,
)
from ..models import (
    MovementType,
    SaleItem,
    SaleTransaction,
    StockMovement,
    Variant,
    REFUNDABLE_STATUSES,
    TRANSACTION_STATUS_PARTIALLY_REFUNDED,
    TRANSACTION_STATUS_REFUNDED,
)
from .concurrency import lock_for_update, run_in_transaction
from .movement_service import _coerce_occurred_at, _record_movement_inner


REASON_PARTIAL_REFUND = "Partial Refund"
REASON_FULL_REFUND = "Full Refund"


@dataclass
class ReconciliationResult:
    transaction: SaleTransaction
    refunded_amount_cents: int
    movements: list[StockMovement] = field(default_factory=list)
    # sale_item_id -> units refunded by this call
    refunded_items: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction.to_dict(),
            "refunded_amount_cents": self.refunded_amount_cents,
            "refunded_items": [
                {"sale_item_id": item_id, "quantity": qty}
                for item_id, qty in self.refunded_items.items()
            ],
            "movements": [m.to_dict() for m in self.movements],
        }


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _load_refundable_transaction(transaction_id: int) -> SaleTransaction:
    sale = lock_for_update(db.session.query(SaleTransaction).filter_by(id=transaction_id)).first()
    if sale is None:
        raise TransactionNotFound(
            f"Sale transaction {transaction_id} not found",
            details={"transaction_id": transaction_id},
        )
    if sale.status not in REFUNDABLE_STATUSES:
        raise TransactionStateError(
            f"Cannot refund transaction {transaction_id} with status: {sale.status}",
            details={"transaction_id": transaction_id, "status": sale.status},
        )
    return sale


def _collect_requested(sale: SaleTransaction, items: list[dict]) -> dict[int, int]:
    """
    Validate a refund request against the sale's lines.

    Returns {sale_item_id: quantity}; repeated lines for one item are summed
    before the remaining-quantity check.
    """
    if not items:
        raise InvalidRefundRequest("No items to refund", details={"transaction_id": sale.id})

    lines_by_id = {line.id: line for line in sale.items}
    requested: dict[int, int] = {}

    for entry in items:
        sale_item_id = entry.get("sale_item_id")
        quantity = entry.get("quantity_to_refund")

        line = lines_by_id.get(sale_item_id)
        if line is None:
            raise SaleItemNotFound(
                f"Sale item {sale_item_id} not found on transaction {sale.id}",
                details={"transaction_id": sale.id, "sale_item_id": sale_item_id},
            )
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise RefundExceedsAvailable(
                "Refund quantity must be at least 1",
                details={"sale_item_id": sale_item_id, "quantity_to_refund": quantity},
            )
        requested[sale_item_id] = requested.get(sale_item_id, 0) + quantity

    for sale_item_id, quantity in requested.items():
        line = lines_by_id[sale_item_id]
        available = line.refundable_quantity
        if quantity > available:
            raise RefundExceedsAvailable(
                f"Cannot refund {quantity} units. Only {available} units available for refund",
                details={
                    "sale_item_id": sale_item_id,
                    "quantity_to_refund": quantity,
                    "quantity": line.quantity,
                    "refunded_quantity": line.refunded_quantity,
                    "available": available,
                },
            )

    return requested


def _next_status(sale: SaleTransaction) -> str:
    lines = sale.items
    if lines and all(line.is_fully_refunded for line in lines):
        return TRANSACTION_STATUS_REFUNDED
    if any(line.refunded_quantity > 0 for line in lines):
        return TRANSACTION_STATUS_PARTIALLY_REFUNDED
    return sale.status


def _apply_refund(
    sale: SaleTransaction,
    requested: dict[int, int],
    *,
    reason: str,
    user_id: int | None,
    occurred_dt: datetime,
) -> ReconciliationResult:
    lines_by_id = {line.id: line for line in sale.items}
    movements: list[StockMovement] = []
    amount_cents = 0

    for sale_item_id, quantity in requested.items():
        line: SaleItem = lines_by_id[sale_item_id]
        line.refunded_quantity = line.refunded_quantity + quantity
        line.refunded_at = occurred_dt
        amount_cents += quantity * line.effective_unit_price_cents

        if line.variant_id is None:
            # Variantless lines carry no stock; bookkeeping only
            continue

        variant = lock_for_update(db.session.query(Variant).filter_by(id=line.variant_id)).first()
        if variant is None:
            # Line points at a variant the catalog removed; bookkeeping only
            current_app.logger.warning(
                "Refund of sale item %s: variant %s no longer exists", line.id, line.variant_id
            )
            continue

        movements.append(_record_movement_inner(
            variant=variant,
            movement_type=MovementType.RETURN,
            quantity=quantity,
            occurred_dt=occurred_dt,
            reason=reason,
            reference_id=str(sale.id),
            user_id=user_id,
            notes=f"{reason}: {quantity} of {line.quantity} units from transaction {sale.id}",
        ))

    sale.status = _next_status(sale)
    db.session.flush()

    current_app.logger.info(
        "Refunded %d units on transaction %s (%d cents); status=%s",
        sum(requested.values()), sale.id, amount_cents, sale.status,
    )
    return ReconciliationResult(
        transaction=sale,
        refunded_amount_cents=amount_cents,
        movements=movements,
        refunded_items=dict(requested),
    )


# =============================================================================
# REFUNDS
# =============================================================================

def refund_items(
    transaction_id: int,
    items: list[dict],
    *,
    user_id: int | None = None,
    occurred_at=None,
    commit: bool = True,
) -> ReconciliationResult:
    """
    Refund specific quantities of specific sale lines.

    items: [{"sale_item_id": int, "quantity_to_refund": int}]

    Raises:
        TransactionNotFound, TransactionStateError, SaleItemNotFound,
        RefundExceedsAvailable, InvalidRefundRequest
    """
    occurred_dt = _coerce_occurred_at(occurred_at)

    def _op():
        sale = _load_refundable_transaction(transaction_id)
        requested = _collect_requested(sale, items)
        return _apply_refund(sale, requested, reason=REASON_PARTIAL_REFUND, user_id=user_id, occurred_dt=occurred_dt)

    return run_in_transaction(_op, commit=commit)


def refund_transaction(
    transaction_id: int,
    *,
    user_id: int | None = None,
    occurred_at=None,
    commit: bool = True,
) -> ReconciliationResult:
    """Refund every remaining unit of every line of a sale."""
    occurred_dt = _coerce_occurred_at(occurred_at)

    def _op():
        sale = _load_refundable_transaction(transaction_id)
        remaining = [
            {"sale_item_id": line.id, "quantity_to_refund": line.refundable_quantity}
            for line in sale.items
            if line.refundable_quantity > 0
        ]
        if not remaining:
            raise RefundExceedsAvailable(
                f"Nothing left to refund on transaction {transaction_id}",
                details={"transaction_id": transaction_id},
            )
        requested = _collect_requested(sale, remaining)
        return _apply_refund(sale, requested, reason=REASON_FULL_REFUND, user_id=user_id, occurred_dt=occurred_dt)

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# QUERIES
# =============================================================================

def get_refund_summary(transaction_id: int) -> dict:
    """
    Refund bookkeeping for one sale.

    Returns:
        - transaction: sale header with lines
        - total_cents / refunded_cents / net_cents
        - movements: every ledger row referencing this sale (SALE and RETURN)
    """
    sale = db.session.get(SaleTransaction, transaction_id)
    if sale is None:
        raise TransactionNotFound(
            f"Sale transaction {transaction_id} not found",
            details={"transaction_id": transaction_id},
        )

    refunded_cents = sum(line.refunded_quantity * line.effective_unit_price_cents for line in sale.items)
    movements = db.session.query(StockMovement).filter(
        StockMovement.reference_id == str(sale.id)
    ).order_by(StockMovement.id.asc()).all()

    return {
        "transaction": sale.to_dict(),
        "total_cents": sale.total_cents,
        "refunded_cents": refunded_cents,
        "net_cents": sale.total_cents - refunded_cents,
        "is_refundable": sale.status in REFUNDABLE_STATUSES,
        "movements": [m.to_dict() for m in movements],
    }
