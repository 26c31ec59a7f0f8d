from .catalog import Product
from .inventory import StockBatch, LedgerEntry, LEDGER_TYPES
from .orders import Order, OrderItem, OrderItemAllocation, StatusChange
from .documents import DocumentSequence

__all__ = [
    'Product',
    'StockBatch', 'LedgerEntry', 'LEDGER_TYPES',
    'Order', 'OrderItem', 'OrderItemAllocation', 'StatusChange',
    'DocumentSequence',
]
