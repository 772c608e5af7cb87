"""
Tagged outcomes for sale engine operations.

Services return either a success dataclass or a ``Failure``; they do not raise
for expected, caller-correctable conditions. The route layer turns both into
JSON with ``to_response()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    TOTAL_MISMATCH = "total_mismatch"
    NOT_FOUND = "not_found"
    STOCK_CONFLICT = "stock_conflict"
    CONFLICT = "conflict"
    IDEMPOTENCY_CONFLICT = "idempotency_conflict"
    IN_PROGRESS = "in_progress"
    INTERNAL_ERROR = "internal_error"


HTTP_STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.TOTAL_MISMATCH: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.STOCK_CONFLICT: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.IDEMPOTENCY_CONFLICT: 409,
    ErrorCode.IN_PROGRESS: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


@dataclass(frozen=True)
class Failure:
    """An expected failure, surfaced to the caller verbatim."""
    code: ErrorCode
    message: str
    details: Any = None
    status: int | None = None  # overrides the code's default HTTP status

    @property
    def http_status(self) -> int:
        return self.status or HTTP_STATUS_BY_CODE[self.code]

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            }
        }

    def to_response(self) -> tuple[dict, int]:
        return self.to_dict(), self.http_status


def validation_failure(detail: str, message: str = "Invalid request") -> Failure:
    return Failure(ErrorCode.VALIDATION_ERROR, message, detail)


def not_found(detail: str, message: str = "Resource not found") -> Failure:
    return Failure(ErrorCode.NOT_FOUND, message, detail)


@dataclass(frozen=True)
class ReceivableSnapshot:
    paid_cents: int
    balance_due_cents: int
    receivable_status: str

    def to_dict(self) -> dict:
        return {
            "paid_cents": self.paid_cents,
            "balance_due_cents": self.balance_due_cents,
            "receivable_status": self.receivable_status,
        }


@dataclass(frozen=True)
class SaleCreated:
    sale_id: int
    customer_id: int
    seller_id: int | None
    trade_in_id: int | None
    total_cents: int
    total_usd_cents: int | None
    currency: str
    fx_rate_used: str | None
    receivable: ReceivableSnapshot
    items_applied: list[int] = field(default_factory=list)

    def to_response(self) -> tuple[dict, int]:
        body = {
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "seller_id": self.seller_id,
            "trade_in_id": self.trade_in_id,
            "total_cents": self.total_cents,
            "total_usd_cents": self.total_usd_cents,
            "currency": self.currency,
            "fx_rate_used": self.fx_rate_used,
            "items_applied": list(self.items_applied),
            "stock_synced": True,
        }
        body.update(self.receivable.to_dict())
        return body, 201


@dataclass(frozen=True)
class SaleUpdated:
    sale_id: int
    customer_id: int
    total_cents: int
    status: str
    receivable: ReceivableSnapshot
    items_replaced: bool = False

    def to_response(self) -> tuple[dict, int]:
        body = {
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "total_cents": self.total_cents,
            "status": self.status,
            "items_replaced": self.items_replaced,
        }
        body.update(self.receivable.to_dict())
        return body, 200


@dataclass(frozen=True)
class SaleCancelled:
    sale_id: int
    status: str
    already_cancelled: bool = False
    released_stock_item_ids: list[int] = field(default_factory=list)

    def to_response(self) -> tuple[dict, int]:
        return {
            "sale_id": self.sale_id,
            "status": self.status,
            "already_cancelled": self.already_cancelled,
            "released_stock_item_ids": list(self.released_stock_item_ids),
        }, 200


@dataclass(frozen=True)
class PaymentRegistered:
    sale_id: int
    payment_id: int | None
    receivable: ReceivableSnapshot
    http_status: int = 201

    def to_response(self) -> tuple[dict, int]:
        body = {"sale_id": self.sale_id, "payment_id": self.payment_id}
        body.update(self.receivable.to_dict())
        return body, self.http_status


@dataclass(frozen=True)
class Replayed:
    """A stored response returned unchanged for a repeated idempotency key."""
    status: int
    body: Any

    def to_response(self) -> tuple[Any, int]:
        return self.body, self.status
