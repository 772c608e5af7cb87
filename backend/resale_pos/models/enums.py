"""
Closed value sets for the sale engine.

Stored through ``enum_column`` so the database rejects anything outside the
set instead of accepting free text.
"""

from __future__ import annotations

from enum import Enum

from ..extensions import db


class Currency(str, Enum):
    ARS = "ARS"
    USD = "USD"


# Sale totals, paid amounts and balances are always held in this currency.
SETTLEMENT_CURRENCY = Currency.ARS


class PaymentMethod(str, Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    CARD = "card"
    MIXED = "mixed"
    TRADE_IN = "trade_in"


class StockStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    SOLD = "sold"
    SERVICE_TECH = "service_tech"
    DRAWER = "drawer"


class SaleStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReceivableStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class UserRole(str, Enum):
    SELLER = "seller"
    ADMIN = "admin"
    OWNER = "owner"


class AuditAction(str, Enum):
    SALE_CREATED = "sale_created"
    SALE_UPDATED = "sale_updated"
    SALE_CANCELLED = "sale_cancelled"
    STOCK_STATE_CHANGED = "stock_state_changed"
    PAYMENT_REGISTERED = "payment_registered"
    WARRANTY_STATUS_CHANGED = "warranty_status_changed"


def enum_column(enum_cls: type[Enum], name: str):
    """Non-native enum column storing member values ("cash", not "CASH")."""
    return db.Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        validate_strings=True,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )
