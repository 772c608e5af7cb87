from .auth import User
from .customers import Customer
from .inventory import StockItem
from .sales import Sale, SaleItem, Payment, Warranty, TradeIn
from .audit import AuditLogEntry, IdempotencyRecord

__all__ = [
    'User',
    'Customer',
    'StockItem',
    'Sale', 'SaleItem', 'Payment', 'Warranty', 'TradeIn',
    'AuditLogEntry', 'IdempotencyRecord',
]
