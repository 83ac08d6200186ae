# Overview: Per-variant and per-product ledger views (history, restocks, stockouts, audit).

from flask import Blueprint, request

from ..errors import StockLedgerError
from ..validation import ValidationError
from ..services import analytics_service, audit_service
from .movements import parse_date_range_args

variants_bp = Blueprint("variants", __name__, url_prefix="/api/variants")
products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@variants_bp.get("/<int:variant_id>/movements")
def variant_movements_route(variant_id: int):
    try:
        start_dt, end_dt = parse_date_range_args()
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        rows = analytics_service.variant_history(
            variant_id,
            limit=request.args.get("limit", default=100, type=int),
            movement_type=request.args.get("type"),
            start=start_dt,
            end=end_dt,
        )
    except StockLedgerError as e:
        return e.to_dict(), e.http_status

    return {"variant_id": variant_id, "items": [m.to_dict() for m in rows]}, 200


@variants_bp.get("/<int:variant_id>/restocks")
def variant_restocks_route(variant_id: int):
    try:
        return analytics_service.restock_history(
            variant_id, limit=request.args.get("limit", default=50, type=int)
        ), 200
    except StockLedgerError as e:
        return e.to_dict(), e.http_status


@variants_bp.get("/<int:variant_id>/stockouts")
def variant_stockouts_route(variant_id: int):
    try:
        return audit_service.stockout_summary(variant_id), 200
    except StockLedgerError as e:
        return e.to_dict(), e.http_status


@variants_bp.get("/<int:variant_id>/audit")
def variant_audit_route(variant_id: int):
    """Replay the variant's ledger and compare with its stored stock."""
    try:
        return audit_service.audit_variant(variant_id).to_dict(), 200
    except StockLedgerError as e:
        return e.to_dict(), e.http_status


@products_bp.get("/<int:product_id>/movements")
def product_movements_route(product_id: int):
    try:
        rows = analytics_service.product_history(
            product_id, limit=request.args.get("limit", default=100, type=int)
        )
    except StockLedgerError as e:
        return e.to_dict(), e.http_status

    return {"product_id": product_id, "items": [m.to_dict() for m in rows]}, 200
