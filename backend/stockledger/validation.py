from __future__ import annotations
from datetime import datetime
from stockledger.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Enum, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Maximum price: $9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999

# Upper bound on lines in one sale / refund / bulk request
MAX_LINES_PER_REQUEST = 500


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    - extra_fields: accepted keys that are not model columns (e.g. "mode", "value")
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore
    extra_fields: set[str] | None = None


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int:
    """Strict integer parsing: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Enum before String: sqlalchemy.Enum subclasses String
    if isinstance(coltype, Enum):
        if not isinstance(value, str):
            raise ValidationError(f"{col.key} must be a string")
        candidate = value.strip().upper()
        if candidate not in coltype.enums:
            raise ValidationError(f"{col.key} must be one of: {', '.join(coltype.enums)}")
        return candidate

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except Exception:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    Keys listed in policy.extra_fields pass through unchanged; the
    enforce_rules_* helpers check them.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)
    extra = policy.extra_fields or set()

    for k in payload.keys():
        if k not in policy.writable_fields and k not in extra:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols and k not in extra:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in extra:
            patch[k] = raw
            continue

        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_movement(patch: dict) -> None:
    # Sign rules per type are the recorder's job; only shape is checked here
    if patch.get("quantity") == 0:
        raise ValidationError("quantity must be non-zero")


def enforce_rules_stock_change(patch: dict) -> None:
    mode = patch.get("mode")
    if mode not in ("add", "set", "remove"):
        raise ValidationError("mode must be one of: add, set, remove")
    patch["value"] = coerce_int("value", patch.get("value"))


def _require_list(payload: dict, key: str) -> list:
    items = payload.get(key)
    if not isinstance(items, list) or not items:
        raise ValidationError(f"{key} must be a non-empty list")
    if len(items) > MAX_LINES_PER_REQUEST:
        raise ValidationError(f"{key} cannot contain more than {MAX_LINES_PER_REQUEST} entries")
    for entry in items:
        if not isinstance(entry, dict):
            raise ValidationError(f"each entry of {key} must be an object")
    return items


def enforce_rules_bulk_changes(payload: dict) -> list[dict]:
    changes = []
    for entry in _require_list(payload, "movements"):
        change = dict(entry)
        change["variant_id"] = coerce_int("variant_id", entry.get("variant_id"))
        enforce_rules_stock_change(change)
        changes.append(change)
    return changes


def enforce_rules_sale(payload: dict) -> list[dict]:
    lines = []
    for entry in _require_list(payload, "items"):
        line = {
            "quantity": coerce_int("quantity", entry.get("quantity")),
            "unit_price_cents": coerce_int("unit_price_cents", entry.get("unit_price_cents")),
        }
        if line["quantity"] <= 0:
            raise ValidationError("quantity must be > 0")
        if not 0 <= line["unit_price_cents"] <= MAX_PRICE_CENTS:
            raise ValidationError(f"unit_price_cents must be between 0 and {MAX_PRICE_CENTS}")

        if entry.get("final_price_cents") is not None:
            line["final_price_cents"] = coerce_int("final_price_cents", entry["final_price_cents"])
            if not 0 <= line["final_price_cents"] <= MAX_PRICE_CENTS:
                raise ValidationError(f"final_price_cents must be between 0 and {MAX_PRICE_CENTS}")

        if entry.get("variant_id") is not None:
            line["variant_id"] = coerce_int("variant_id", entry["variant_id"])
        elif entry.get("product_id") is not None:
            line["product_id"] = coerce_int("product_id", entry["product_id"])
        else:
            raise ValidationError("each item requires variant_id or product_id")
        lines.append(line)
    return lines


def enforce_rules_refund(payload: dict) -> list[dict]:
    # Quantity bounds are checked against the sale by the refund service
    return [
        {
            "sale_item_id": coerce_int("sale_item_id", entry.get("sale_item_id")),
            "quantity_to_refund": coerce_int("quantity_to_refund", entry.get("quantity_to_refund")),
        }
        for entry in _require_list(payload, "items")
    ]
