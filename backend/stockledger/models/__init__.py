from .catalog import Product, Variant
from .ledger import MovementType, StockMovement
from .sales import (
    SaleTransaction,
    SaleItem,
    TRANSACTION_STATUS_PENDING,
    TRANSACTION_STATUS_COMPLETED,
    TRANSACTION_STATUS_PARTIALLY_REFUNDED,
    TRANSACTION_STATUS_REFUNDED,
    REFUNDABLE_STATUSES,
)

__all__ = [
    'Product', 'Variant',
    'MovementType', 'StockMovement',
    'SaleTransaction', 'SaleItem',
    'TRANSACTION_STATUS_PENDING', 'TRANSACTION_STATUS_COMPLETED',
    'TRANSACTION_STATUS_PARTIALLY_REFUNDED', 'TRANSACTION_STATUS_REFUNDED',
    'REFUNDABLE_STATUSES',
]
