# Overview: Read-only query facade over the stock ledger (filters, pagination, restock aggregates).

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_

from ..extensions import db
from ..errors import InvalidMovement, ProductNotFound
from ..models import MovementType, Product, StockMovement, Variant
from .movement_service import get_variant

MAX_PER_PAGE = 500


def _parse_type(movement_type) -> MovementType | None:
    if movement_type is None or movement_type == "":
        return None
    try:
        return MovementType.parse(movement_type)
    except ValueError as exc:
        raise InvalidMovement(str(exc), details={"type": str(movement_type)}) from exc


def _filtered(
    q,
    *,
    movement_type=None,
    start: datetime | None = None,
    end: datetime | None = None,
):
    parsed_type = _parse_type(movement_type)
    if parsed_type is not None:
        q = q.filter(StockMovement.type == parsed_type)
    # Date range is inclusive on both ends
    if start is not None:
        q = q.filter(StockMovement.occurred_at >= start)
    if end is not None:
        q = q.filter(StockMovement.occurred_at <= end)
    return q


def _newest_first(q):
    return q.order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())


def list_movements(
    *,
    movement_type=None,
    start: datetime | None = None,
    end: datetime | None = None,
    variant_id: int | None = None,
    product_id: int | None = None,
    search: str | None = None,
    page: int = 1,
    per_page: int = 50,
):
    """
    Filtered, paginated ledger feed, newest first.

    search matches product name, product SKU or variant SKU (substring,
    case-insensitive). Returns a Flask-SQLAlchemy Pagination.
    """
    per_page = max(1, min(per_page, MAX_PER_PAGE))
    page = max(1, page)

    q = StockMovement.query.join(Variant, StockMovement.variant_id == Variant.id).join(
        Product, Variant.product_id == Product.id
    )
    q = _filtered(q, movement_type=movement_type, start=start, end=end)

    if variant_id is not None:
        q = q.filter(StockMovement.variant_id == variant_id)
    if product_id is not None:
        q = q.filter(Variant.product_id == product_id)
    if search:
        term = f"%{search.strip()}%"
        q = q.filter(or_(
            Product.name.ilike(term),
            Product.sku.ilike(term),
            Variant.sku.ilike(term),
        ))

    return _newest_first(q).paginate(page=page, per_page=per_page, error_out=False)


def recent_movements(*, limit: int = 50, movement_type=None) -> list[StockMovement]:
    limit = max(1, min(limit, MAX_PER_PAGE))
    q = _filtered(StockMovement.query, movement_type=movement_type)
    return _newest_first(q).limit(limit).all()


def variant_history(
    variant_id: int,
    *,
    limit: int = 100,
    movement_type=None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[StockMovement]:
    get_variant(variant_id)
    q = _filtered(
        StockMovement.query.filter_by(variant_id=variant_id),
        movement_type=movement_type,
        start=start,
        end=end,
    )
    return _newest_first(q).limit(max(1, min(limit, MAX_PER_PAGE))).all()


def product_history(product_id: int, *, limit: int = 100) -> list[StockMovement]:
    """Movements across every variant of a product."""
    if db.session.get(Product, product_id) is None:
        raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})

    variant_ids = db.select(Variant.id).where(Variant.product_id == product_id)
    q = StockMovement.query.filter(StockMovement.variant_id.in_(variant_ids))
    return _newest_first(q).limit(max(1, min(limit, MAX_PER_PAGE))).all()


def restock_history(variant_id: int, *, limit: int = 50) -> dict:
    """
    Restock aggregates for a variant.

    Totals cover every RESTOCK; the returned list is the newest `limit`.
    """
    get_variant(variant_id)

    totals = db.session.query(
        func.count(StockMovement.id),
        func.coalesce(func.sum(StockMovement.quantity), 0),
    ).filter(
        StockMovement.variant_id == variant_id,
        StockMovement.type == MovementType.RESTOCK,
    ).one()
    total_restocks = int(totals[0] or 0)
    total_quantity = int(totals[1] or 0)

    restocks = _newest_first(StockMovement.query.filter(
        StockMovement.variant_id == variant_id,
        StockMovement.type == MovementType.RESTOCK,
    )).limit(max(1, min(limit, MAX_PER_PAGE))).all()

    return {
        "variant_id": variant_id,
        "total_restocks": total_restocks,
        "total_quantity": total_quantity,
        "avg_quantity": round(total_quantity / total_restocks) if total_restocks else 0,
        "restocks": [m.to_dict() for m in restocks],
    }


def movements_for_reference(reference_id) -> list[StockMovement]:
    """Every movement caused by one sale transaction (SALE and RETURN rows)."""
    return StockMovement.query.filter(
        StockMovement.reference_id == str(reference_id)
    ).order_by(StockMovement.id.asc()).all()
