# Overview: Flask API routes for recording and listing stock movements.

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start_date/end_date filtering is inclusive on both ends.

Every write goes through the Movement Recorder; these routes never touch
Variant.stock directly.
"""

from flask import Blueprint, request, current_app

from ..errors import StockLedgerError
from ..models import StockMovement
from stockledger.time_utils import parse_iso_datetime
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    validate_payload,
    enforce_rules_movement,
    enforce_rules_stock_change,
    enforce_rules_bulk_changes,
)
from ..services import analytics_service, movement_service

movements_bp = Blueprint("movements", __name__, url_prefix="/api/movements")

MOVEMENT_POLICY = ModelValidationPolicy(
    writable_fields={"variant_id", "type", "quantity", "reason", "reference_id", "user_id", "notes", "occurred_at"},
    required_on_create={"variant_id", "type", "quantity"},
)

STOCK_CHANGE_POLICY = ModelValidationPolicy(
    writable_fields={"variant_id", "reason", "user_id", "notes", "occurred_at"},
    required_on_create={"variant_id", "mode", "value"},
    extra_fields={"mode", "value"},
)


def parse_date_range_args():
    """Returns (start, end) or raises ValidationError."""
    try:
        return (
            parse_iso_datetime(request.args.get("start_date")),
            parse_iso_datetime(request.args.get("end_date")),
        )
    except Exception:
        raise ValidationError("start_date and end_date must be ISO-8601 datetimes")


@movements_bp.post("")
def record_movement_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=StockMovement, payload=payload, policy=MOVEMENT_POLICY, partial=False)
        enforce_rules_movement(patch)
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        movement = movement_service.record_movement(
            patch["variant_id"],
            patch["type"],
            patch["quantity"],
            reason=patch.get("reason"),
            reference_id=patch.get("reference_id"),
            user_id=patch.get("user_id"),
            notes=patch.get("notes"),
            occurred_at=patch.get("occurred_at"),
        )
    except StockLedgerError as e:
        return e.to_dict(), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record movement")
        return {"error": "Internal server error"}, 500

    return {"movement": movement.to_dict(), "variant": movement.variant.to_dict()}, 201


@movements_bp.post("/change")
def apply_stock_change_route():
    """
    Operator stock change expressed as add / set / remove.

    Body: {"variant_id", "mode", "value", "reason"?, "notes"?}
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=StockMovement, payload=payload, policy=STOCK_CHANGE_POLICY, partial=False)
        enforce_rules_stock_change(patch)
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        movement = movement_service.apply_stock_change(
            patch["variant_id"],
            patch["mode"],
            patch["value"],
            reason=patch.get("reason"),
            notes=patch.get("notes"),
            user_id=patch.get("user_id"),
            occurred_at=patch.get("occurred_at"),
        )
    except StockLedgerError as e:
        return e.to_dict(), e.http_status
    except Exception:
        current_app.logger.exception("Failed to apply stock change")
        return {"error": "Internal server error"}, 500

    return {"movement": movement.to_dict(), "variant": movement.variant.to_dict()}, 201


@movements_bp.post("/bulk")
def bulk_stock_change_route():
    """All-or-nothing batch of add/set/remove changes: {"movements": [...], "user_id"?}."""
    payload = request.get_json(silent=True) or {}

    try:
        changes = enforce_rules_bulk_changes(payload)
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        movements = movement_service.bulk_apply_stock_changes(changes, user_id=payload.get("user_id"))
    except StockLedgerError as e:
        return e.to_dict(), e.http_status
    except Exception:
        current_app.logger.exception("Failed to apply bulk stock changes")
        return {"error": "Internal server error"}, 500

    return {"movements": [m.to_dict() for m in movements], "count": len(movements)}, 201


@movements_bp.get("")
def list_movements_route():
    try:
        start_dt, end_dt = parse_date_range_args()
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        page = analytics_service.list_movements(
            movement_type=request.args.get("type"),
            start=start_dt,
            end=end_dt,
            variant_id=request.args.get("variant_id", type=int),
            product_id=request.args.get("product_id", type=int),
            search=request.args.get("search"),
            page=request.args.get("page", default=1, type=int),
            per_page=request.args.get("per_page", default=50, type=int),
        )
    except StockLedgerError as e:
        return e.to_dict(), e.http_status

    return {
        "items": [m.to_dict() for m in page.items],
        "page": page.page,
        "per_page": page.per_page,
        "total": page.total,
        "pages": page.pages,
    }, 200


@movements_bp.get("/recent")
def recent_movements_route():
    try:
        rows = analytics_service.recent_movements(
            limit=request.args.get("limit", default=50, type=int),
            movement_type=request.args.get("type"),
        )
    except StockLedgerError as e:
        return e.to_dict(), e.http_status

    return {"items": [m.to_dict() for m in rows]}, 200
