# Overview: Movement Recorder; the only writer of Variant.stock.

"""
Stock Ledger Invariants (authoritative)

- Every stock change is one StockMovement row, appended in the same DB
  transaction as the Variant.stock update. Both commit or neither does.
- new_stock = previous_stock + quantity for every movement.
- Variant.stock >= 0 at all times. A change that would go negative raises
  InsufficientStock; the recorder never clamps.
- Zero-quantity movements are rejected (no state change, ledger noise).
- RESTOCK also stamps Variant.last_restocked with the event time.

Time semantics:
- occurred_at is the logical event time, normalized to UTC-naive.
- Historical times are allowed; times beyond the clock tolerance are not.

Callers that need several movements in one unit (sales, refunds, bulk jobs)
pass commit=False and own the transaction.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import InsufficientStock, InvalidMovement, ProductNotFound, VariantNotFound
from ..models import MovementType, Product, StockMovement, Variant
from stockledger.time_utils import is_in_future, normalize_event_time
from .concurrency import lock_for_update, run_in_transaction


CHANGE_MODE_ADD = "add"
CHANGE_MODE_SET = "set"
CHANGE_MODE_REMOVE = "remove"
CHANGE_MODES = (CHANGE_MODE_ADD, CHANGE_MODE_SET, CHANGE_MODE_REMOVE)

REASON_CUSTOMER_RETURN = "customer_return"
SHRINKAGE_REASONS = frozenset({"damaged", "theft"})

INITIAL_INVENTORY_REASON = "Initial inventory"


def _coerce_quantity(quantity) -> int:
    # bool is an int subclass; True is not a quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidMovement("quantity must be an integer", details={"quantity": quantity})
    if quantity == 0:
        raise InvalidMovement("quantity must be non-zero")
    return quantity


def _coerce_type(movement_type) -> MovementType:
    try:
        return MovementType.parse(movement_type)
    except ValueError as exc:
        raise InvalidMovement(str(exc), details={"type": str(movement_type)}) from exc


def _coerce_occurred_at(occurred_at) -> datetime:
    try:
        occurred_dt = normalize_event_time(occurred_at)
    except ValueError as exc:
        raise InvalidMovement("occurred_at must be an ISO-8601 datetime") from exc
    if is_in_future(occurred_dt):
        raise InvalidMovement("occurred_at cannot be in the future")
    return occurred_dt


def _get_variant_locked(variant_id: int) -> Variant:
    variant = lock_for_update(db.session.query(Variant).filter_by(id=variant_id)).first()
    if variant is None:
        raise VariantNotFound(f"Variant {variant_id} not found", details={"variant_id": variant_id})
    return variant


def _record_movement_inner(
    *,
    variant: Variant,
    movement_type: MovementType,
    quantity: int,
    occurred_dt: datetime,
    reason: str | None = None,
    reference_id: str | None = None,
    user_id: int | None = None,
    notes: str | None = None,
) -> StockMovement:
    """Core append: compute the chain, check the floor, write both rows. No commit."""
    if not movement_type.accepts(quantity):
        raise InvalidMovement(
            f"{movement_type.value} movements must have "
            f"{'positive' if movement_type.required_sign > 0 else 'negative'} quantity",
            details={"type": movement_type.value, "quantity": quantity},
        )

    previous_stock = variant.stock
    new_stock = previous_stock + quantity
    if new_stock < 0:
        raise InsufficientStock(
            f"Insufficient stock for variant {variant.id}: "
            f"on hand {previous_stock}, change {quantity}",
            details={
                "variant_id": variant.id,
                "on_hand": previous_stock,
                "quantity": quantity,
            },
        )

    movement = StockMovement(
        variant_id=variant.id,
        type=movement_type,
        quantity=quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=reason,
        reference_id=str(reference_id) if reference_id is not None else None,
        user_id=user_id,
        notes=notes,
        occurred_at=occurred_dt,
    )
    variant.stock = new_stock
    if movement_type is MovementType.RESTOCK:
        variant.last_restocked = occurred_dt

    db.session.add(movement)
    db.session.flush()

    current_app.logger.debug(
        "Recorded %s %+d for variant %s (%d -> %d)",
        movement_type.value, quantity, variant.id, previous_stock, new_stock,
    )
    return movement


def record_movement(
    variant_id: int,
    movement_type,
    quantity: int,
    *,
    reason: str | None = None,
    reference_id: str | None = None,
    user_id: int | None = None,
    notes: str | None = None,
    occurred_at=None,
    commit: bool = True,
) -> StockMovement:
    """
    Append one movement and update the variant's stock atomically.

    Raises:
        InvalidMovement: zero/non-int quantity, unknown type, wrong sign, future time
        VariantNotFound: unknown variant_id
        InsufficientStock: the change would make stock negative
    """
    quantity = _coerce_quantity(quantity)
    movement_type = _coerce_type(movement_type)
    occurred_dt = _coerce_occurred_at(occurred_at)

    def _op():
        variant = _get_variant_locked(variant_id)
        return _record_movement_inner(
            variant=variant,
            movement_type=movement_type,
            quantity=quantity,
            occurred_dt=occurred_dt,
            reason=reason,
            reference_id=reference_id,
            user_id=user_id,
            notes=notes,
        )

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# VARIANT CREATION
# =============================================================================

def create_variant(
    *,
    product_id: int,
    sku: str,
    price_cents: int = 0,
    initial_stock: int = 0,
    reorder_point: int = 10,
    user_id: int | None = None,
    occurred_at=None,
    commit: bool = True,
) -> Variant:
    """
    Create a variant at stock 0 and seed it with an initial RESTOCK.

    The variant never gets a stock value that the ledger cannot replay.
    """
    if isinstance(initial_stock, bool) or not isinstance(initial_stock, int) or initial_stock < 0:
        raise InvalidMovement("initial_stock must be a non-negative integer")
    occurred_dt = _coerce_occurred_at(occurred_at)

    def _op():
        product = db.session.query(Product).filter_by(id=product_id).first()
        if product is None:
            raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})

        variant = Variant(
            product_id=product_id,
            sku=sku,
            price_cents=price_cents,
            stock=0,
            reorder_point=reorder_point,
        )
        db.session.add(variant)
        db.session.flush()

        if initial_stock > 0:
            _record_movement_inner(
                variant=variant,
                movement_type=MovementType.RESTOCK,
                quantity=initial_stock,
                occurred_dt=occurred_dt,
                reason=INITIAL_INVENTORY_REASON,
                user_id=user_id,
            )
        return variant

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# MODE-BASED CHANGES (add / set / remove)
# =============================================================================

def resolve_stock_change(mode: str, value: int, reason: str | None, current_stock: int) -> tuple[MovementType, int]:
    """
    Translate an operator's add/set/remove request into (type, signed quantity).

    - add:    RESTOCK +value (RETURN when reason is customer_return)
    - set:    ADJUSTMENT of (value - current_stock)
    - remove: SHRINKAGE -value for damaged/theft, otherwise ADJUSTMENT -value
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidMovement("value must be an integer", details={"value": value})

    if mode == CHANGE_MODE_SET:
        if value < 0:
            raise InvalidMovement("value must be >= 0 for set", details={"value": value})
        return MovementType.ADJUSTMENT, value - current_stock

    if value <= 0:
        raise InvalidMovement("value must be > 0", details={"value": value})

    if mode == CHANGE_MODE_ADD:
        if reason == REASON_CUSTOMER_RETURN:
            return MovementType.RETURN, value
        return MovementType.RESTOCK, value

    if mode == CHANGE_MODE_REMOVE:
        if reason in SHRINKAGE_REASONS:
            return MovementType.SHRINKAGE, -value
        return MovementType.ADJUSTMENT, -value

    raise InvalidMovement(f"invalid mode: {mode!r}", details={"mode": mode, "allowed": list(CHANGE_MODES)})


def _apply_stock_change_inner(
    *,
    variant_id: int,
    mode: str,
    value: int,
    reason: str | None,
    notes: str | None,
    user_id: int | None,
    occurred_dt: datetime,
) -> StockMovement:
    variant = _get_variant_locked(variant_id)
    movement_type, quantity = resolve_stock_change(mode, value, reason, variant.stock)
    if quantity == 0:
        raise InvalidMovement(
            f"Variant {variant_id} already has stock {variant.stock}; nothing to record",
            details={"variant_id": variant_id, "stock": variant.stock},
        )
    return _record_movement_inner(
        variant=variant,
        movement_type=movement_type,
        quantity=quantity,
        occurred_dt=occurred_dt,
        reason=reason,
        user_id=user_id,
        notes=notes,
    )


def apply_stock_change(
    variant_id: int,
    mode: str,
    value: int,
    *,
    reason: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
    occurred_at=None,
    commit: bool = True,
) -> StockMovement:
    """Record an operator stock change expressed as add/set/remove."""
    occurred_dt = _coerce_occurred_at(occurred_at)

    def _op():
        return _apply_stock_change_inner(
            variant_id=variant_id,
            mode=mode,
            value=value,
            reason=reason,
            notes=notes,
            user_id=user_id,
            occurred_dt=occurred_dt,
        )

    return run_in_transaction(_op, commit=commit)


def bulk_apply_stock_changes(changes: list[dict], *, user_id: int | None = None) -> list[StockMovement]:
    """
    Apply several add/set/remove changes as one all-or-nothing unit.

    Each change: {"variant_id", "mode", "value", "reason"?, "notes"?}.
    Changes apply in order, so two changes to one variant chain correctly.
    """
    if not changes:
        raise InvalidMovement("No movements provided")
    occurred_dt = _coerce_occurred_at(None)

    def _op():
        movements = []
        for change in changes:
            movements.append(_apply_stock_change_inner(
                variant_id=change.get("variant_id"),
                mode=change.get("mode"),
                value=change.get("value"),
                reason=change.get("reason"),
                notes=change.get("notes"),
                user_id=user_id,
                occurred_dt=occurred_dt,
            ))
        return movements

    return run_in_transaction(_op)


def get_variant(variant_id: int) -> Variant:
    variant = db.session.get(Variant, variant_id)
    if variant is None:
        raise VariantNotFound(f"Variant {variant_id} not found", details={"variant_id": variant_id})
    return variant
