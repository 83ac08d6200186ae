"""
Sale completion: the sales subsystem's entry point into the stock ledger.

WHY: A completed sale and its stock decrements must land together. The sale
header, every line, and one SALE movement per line are one DB transaction;
any InsufficientStock or VariantNotFound aborts the whole sale.

Lines sold by product only (no variant chosen at the register) resolve to the
product's first variant, and the resolved variant is stored on the line so a
later refund restores the same variant.
"""

from __future__ import annotations

from ..extensions import db
from ..errors import InvalidMovement, ProductNotFound, TransactionNotFound, VariantNotFound
from ..models import (
    MovementType,
    Product,
    SaleItem,
    SaleTransaction,
    Variant,
    TRANSACTION_STATUS_COMPLETED,
)
from .concurrency import lock_for_update, run_in_transaction
from .movement_service import _coerce_occurred_at, _record_movement_inner


def _resolve_line_variant(line: dict) -> tuple[int, Variant | None]:
    """Return (product_id, variant) for a requested line."""
    variant_id = line.get("variant_id")
    if variant_id is not None:
        variant = lock_for_update(db.session.query(Variant).filter_by(id=variant_id)).first()
        if variant is None:
            raise VariantNotFound(f"Variant {variant_id} not found", details={"variant_id": variant_id})
        return variant.product_id, variant

    product_id = line.get("product_id")
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})

    default_variant = lock_for_update(
        db.session.query(Variant).filter_by(product_id=product.id).order_by(Variant.id.asc())
    ).first()
    return product.id, default_variant


def _validate_line(line: dict) -> None:
    quantity = line.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidMovement("Sale line quantity must be a positive integer", details={"line": line})
    price = line.get("unit_price_cents")
    if isinstance(price, bool) or not isinstance(price, int) or price < 0:
        raise InvalidMovement("unit_price_cents must be a non-negative integer", details={"line": line})
    final_price = line.get("final_price_cents")
    if final_price is not None and (isinstance(final_price, bool) or not isinstance(final_price, int) or final_price < 0):
        raise InvalidMovement("final_price_cents must be a non-negative integer", details={"line": line})
    if line.get("variant_id") is None and line.get("product_id") is None:
        raise InvalidMovement("Sale line requires variant_id or product_id", details={"line": line})


def record_sale(
    items: list[dict],
    *,
    user_id: int | None = None,
    occurred_at=None,
    commit: bool = True,
) -> SaleTransaction:
    """
    Create a completed sale and decrement stock for each line.

    items: [{"variant_id" | "product_id", "quantity", "unit_price_cents",
             "final_price_cents"?}]
    """
    if not items:
        raise InvalidMovement("No items provided")
    for line in items:
        _validate_line(line)
    occurred_dt = _coerce_occurred_at(occurred_at)

    def _op():
        sale = SaleTransaction(
            status=TRANSACTION_STATUS_COMPLETED,
            user_id=user_id,
            created_at=occurred_dt,
        )
        db.session.add(sale)
        db.session.flush()

        for line in items:
            product_id, variant = _resolve_line_variant(line)
            item = SaleItem(
                product_id=product_id,
                variant_id=variant.id if variant is not None else None,
                quantity=line["quantity"],
                unit_price_cents=line["unit_price_cents"],
                final_price_cents=line.get("final_price_cents"),
                refunded_quantity=0,
            )
            sale.items.append(item)

            if variant is not None:
                _record_movement_inner(
                    variant=variant,
                    movement_type=MovementType.SALE,
                    quantity=-line["quantity"],
                    occurred_dt=occurred_dt,
                    reference_id=str(sale.id),
                    user_id=user_id,
                    notes=f"Sale transaction {sale.id}",
                )

        db.session.flush()
        return sale

    return run_in_transaction(_op, commit=commit)


def get_transaction(transaction_id: int) -> SaleTransaction:
    sale = db.session.get(SaleTransaction, transaction_id)
    if sale is None:
        raise TransactionNotFound(
            f"Sale transaction {transaction_id} not found",
            details={"transaction_id": transaction_id},
        )
    return sale
