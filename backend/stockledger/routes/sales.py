# backend/stockledger/routes/sales.py
"""
Sale and refund routes.

WHY REFUND WINDOW HERE: the Refund Reconciler only knows quantities and
statuses. Store policy (how long after a sale a refund is still accepted)
lives in configuration and is checked here before the reconciler runs.
REFUND_WINDOW_DAYS = 0 disables the check.
"""

from datetime import timedelta

from flask import Blueprint, request, current_app

from ..errors import RefundWindowExpired, StockLedgerError
from ..models import SaleTransaction
from stockledger.time_utils import utcnow, to_utc_naive, to_utc_z, parse_iso_datetime
from ..validation import ValidationError, coerce_int, enforce_rules_sale, enforce_rules_refund
from ..services import refund_service, sales_service

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _optional_user_id(payload: dict):
    user_id = payload.get("user_id")
    return None if user_id is None else coerce_int("user_id", user_id)


def check_refund_window(sale: SaleTransaction) -> None:
    window_days = current_app.config.get("REFUND_WINDOW_DAYS", 30)
    if not window_days:
        return
    deadline = to_utc_naive(sale.created_at) + timedelta(days=window_days)
    if utcnow() > deadline:
        raise RefundWindowExpired(
            f"Refund window of {window_days} days expired for transaction {sale.id}",
            details={
                "transaction_id": sale.id,
                "sold_at": to_utc_z(sale.created_at),
                "window_days": window_days,
            },
        )


@sales_bp.post("")
def create_sale_route():
    """
    Body: {"items": [{"variant_id" | "product_id", "quantity", "unit_price_cents",
           "final_price_cents"?}], "user_id"?, "occurred_at"?}
    """
    payload = request.get_json(silent=True) or {}

    try:
        items = enforce_rules_sale(payload)
        user_id = _optional_user_id(payload)
        occurred_at = parse_iso_datetime(payload.get("occurred_at"))
    except ValidationError as e:
        return {"error": str(e)}, 400
    except (TypeError, ValueError, AttributeError):
        return {"error": "occurred_at must be an ISO-8601 datetime"}, 400

    try:
        sale = sales_service.record_sale(items, user_id=user_id, occurred_at=occurred_at)
    except StockLedgerError as e:
        return e.to_dict(), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record sale")
        return {"error": "Internal server error"}, 500

    return {"transaction": sale.to_dict()}, 201


@sales_bp.get("/<int:transaction_id>")
def get_sale_route(transaction_id: int):
    try:
        return refund_service.get_refund_summary(transaction_id), 200
    except StockLedgerError as e:
        return e.to_dict(), e.http_status


@sales_bp.post("/<int:transaction_id>/refunds")
def refund_items_route(transaction_id: int):
    """Partial refund: {"items": [{"sale_item_id", "quantity_to_refund"}], "user_id"?}."""
    payload = request.get_json(silent=True) or {}

    try:
        items = enforce_rules_refund(payload)
        user_id = _optional_user_id(payload)
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        check_refund_window(sales_service.get_transaction(transaction_id))
        result = refund_service.refund_items(transaction_id, items, user_id=user_id)
    except StockLedgerError as e:
        return e.to_dict(), e.http_status
    except Exception:
        current_app.logger.exception("Failed to refund items on transaction %s", transaction_id)
        return {"error": "Internal server error"}, 500

    return result.to_dict(), 200


@sales_bp.post("/<int:transaction_id>/refund")
def refund_transaction_route(transaction_id: int):
    """Refund every remaining unit of the sale."""
    payload = request.get_json(silent=True) or {}

    try:
        user_id = _optional_user_id(payload)
    except ValidationError as e:
        return {"error": str(e)}, 400

    try:
        check_refund_window(sales_service.get_transaction(transaction_id))
        result = refund_service.refund_transaction(transaction_id, user_id=user_id)
    except StockLedgerError as e:
        return e.to_dict(), e.http_status
    except Exception:
        current_app.logger.exception("Failed to refund transaction %s", transaction_id)
        return {"error": "Internal server error"}, 500

    return result.to_dict(), 200
