# Overview: Structured failures raised by the stock ledger services.

"""
Every ledger failure carries:
- kind: stable machine-readable string (used by API clients)
- message: human-readable reason
- details: optional structured context (ids, quantities)
- http_status: what the routes answer with

Mutating operations are all-or-nothing: when one of these is raised, every
write attempted in that call has been rolled back.
"""

from __future__ import annotations


class StockLedgerError(Exception):
    """Base class for ledger failures."""
    kind = "stock_ledger_error"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "details": self.details,
        }


class VariantNotFound(StockLedgerError):
    kind = "variant_not_found"
    http_status = 404


class ProductNotFound(StockLedgerError):
    kind = "product_not_found"
    http_status = 404


class InsufficientStock(StockLedgerError):
    """The change would drive a variant's stock below zero."""
    kind = "insufficient_stock"
    http_status = 409


class InvalidMovement(StockLedgerError):
    """Zero quantity, wrong sign for the type, unknown type, bad event time."""
    kind = "invalid_movement"
    http_status = 400


class TransactionNotFound(StockLedgerError):
    kind = "transaction_not_found"
    http_status = 404


class SaleItemNotFound(StockLedgerError):
    kind = "sale_item_not_found"
    http_status = 404


class RefundExceedsAvailable(StockLedgerError):
    """Requested refund quantity is outside 1..(quantity - refunded_quantity)."""
    kind = "refund_exceeds_available"
    http_status = 409


class TransactionStateError(StockLedgerError):
    """Refund requested on a transaction that is not completed/partially_refunded."""
    kind = "transaction_state"
    http_status = 409


class InvalidRefundRequest(StockLedgerError):
    kind = "invalid_refund_request"
    http_status = 400


class RefundWindowExpired(StockLedgerError):
    kind = "refund_window_expired"
    http_status = 409


class ImmutableMovementError(StockLedgerError):
    """Raised when something tries to update or delete a ledger row."""
    kind = "immutable_movement"
    http_status = 500


class ChunkTimeout(StockLedgerError):
    """A bulk chunk ran past its time ceiling."""
    kind = "chunk_timeout"
    http_status = 500
