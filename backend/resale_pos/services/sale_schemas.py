# Overview: Request schemas for the sale engine; normalize and validate payloads before any transaction opens.

"""
Sale payload schemas

Every parse_* function returns a typed request or a validation Failure.
Nothing here touches the database: shape and range problems are rejected
before a transaction opens, so they can never leave partial writes.

Payment metadata may be sent flat (payment_method, card_brand, ...) or nested
under "payment"; flat fields win when both are present.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from ..models.enums import Currency, PaymentMethod
from ..results import validation_failure
from ..validation import (
    ValidationError,
    optional_text,
    require_cents,
    require_datetime,
    require_decimal,
    require_int,
    require_object,
)
from .payment_ledger import PaymentEntry


@dataclass(frozen=True)
class ItemLine:
    stock_item_id: int
    quantity: int
    sale_price_cents: int

    @property
    def subtotal_cents(self) -> int:
        return self.quantity * self.sale_price_cents


@dataclass(frozen=True)
class PaymentTerms:
    """Checkout payment metadata stored on the sale row."""
    method: str | None = None
    card_brand: str | None = None
    installments: int | None = None
    surcharge_pct: Decimal | None = None
    deposit_cents: int | None = None


@dataclass(frozen=True)
class TradeInBlock:
    device: dict
    trade_value_usd_cents: int
    fx_rate_used: Decimal | None


@dataclass
class CreateSaleRequest:
    sale_date: datetime
    items: list[ItemLine]
    customer_id: int | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    seller_id: int | None = None
    declared_total_cents: int | None = None
    currency: str = Currency.ARS.value
    fx_rate_used: Decimal | None = None
    terms: PaymentTerms = field(default_factory=PaymentTerms)
    payments: list[PaymentEntry] | None = None
    trade_in: TradeInBlock | None = None
    notes: str | None = None
    details: str | None = None


@dataclass
class UpdateSaleRequest:
    """
    Partial update. Only keys present in the payload are applied; `provided`
    records which sale fields were sent so an explicit null can clear a value.
    """
    provided: set[str] = field(default_factory=set)
    sale_date: datetime | None = None
    items: list[ItemLine] | None = None
    customer_id: int | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    seller_id: int | None = None
    declared_total_cents: int | None = None
    currency: str | None = None
    fx_rate_used: Decimal | None = None
    terms: PaymentTerms = field(default_factory=PaymentTerms)
    notes: str | None = None
    details: str | None = None

    @property
    def changes_customer(self) -> bool:
        return "customer_id" in self.provided or "customer" in self.provided


# =============================================================================
# FIELD PARSERS
# =============================================================================

def _method(value: Any, field_name: str = "payment_method") -> str | None:
    text = optional_text(value, field_name)
    if text is None:
        return None
    method = text.lower()
    if method not in {m.value for m in PaymentMethod}:
        raise ValidationError(f"{field_name}_invalid")
    return method


def _currency(value: Any, field_name: str = "currency") -> str | None:
    text = optional_text(value, field_name)
    if text is None:
        return None
    currency = text.upper()
    if currency not in {c.value for c in Currency}:
        raise ValidationError(f"{field_name}_invalid")
    return currency


def _positive_fx(value: Any) -> Decimal | None:
    fx = require_decimal(value, "fx_rate_used")
    if fx is not None and fx <= 0:
        raise ValidationError("fx_rate_used_must_be_gt_0")
    return fx


def _items(value: Any) -> list[ItemLine]:
    if not isinstance(value, list) or not value:
        raise ValidationError("items_required")

    items = []
    seen = set()
    for raw in value:
        if not isinstance(raw, dict):
            raise ValidationError("item_must_be_object")
        stock_item_id = require_int(raw.get("stock_item_id"), "stock_item_id")
        quantity = require_int(raw.get("qty", 1), "qty")
        price = require_cents(raw.get("sale_price_cents"), "sale_price_cents")

        if quantity < 1:
            raise ValidationError("qty_must_be_gte_1")
        if quantity != 1:
            raise ValidationError("qty_not_supported_for_serialized_stock")
        if price <= 0:
            raise ValidationError("sale_price_cents_must_be_gt_0")
        if stock_item_id in seen:
            raise ValidationError("duplicate_stock_item_id")
        seen.add(stock_item_id)

        items.append(ItemLine(stock_item_id=stock_item_id, quantity=quantity, sale_price_cents=price))
    return items


def _pick(payload: dict, nested: dict, flat_key: str, nested_key: str) -> Any:
    """Flat field first, then the nested payment block; blanks fall through."""
    value = payload.get(flat_key)
    if value is None or value == "":
        value = nested.get(nested_key)
    return value


def _terms(payload: dict) -> PaymentTerms:
    nested = require_object(payload.get("payment"), "payment") or {}
    installments = require_int(_pick(payload, nested, "installments", "installments"), "installments", allow_none=True)
    surcharge = require_decimal(_pick(payload, nested, "surcharge_pct", "surcharge_pct"), "surcharge_pct")
    deposit = require_cents(_pick(payload, nested, "deposit_cents", "deposit_cents"), "deposit_cents", allow_none=True)

    if installments is not None and installments < 1:
        raise ValidationError("installments_must_be_gte_1")
    if surcharge is not None and surcharge < 0:
        raise ValidationError("surcharge_pct_must_be_gte_0")
    if deposit is not None and deposit < 0:
        raise ValidationError("deposit_cents_must_be_gte_0")

    return PaymentTerms(
        method=_method(_pick(payload, nested, "payment_method", "method")),
        card_brand=optional_text(_pick(payload, nested, "card_brand", "card_brand"), "card_brand", max_length=32),
        installments=installments,
        surcharge_pct=surcharge,
        deposit_cents=deposit,
    )


def _terms_provided(payload: dict) -> set[str]:
    nested = payload.get("payment") if isinstance(payload.get("payment"), dict) else {}
    mapping = {
        "payment_method": "method",
        "card_brand": "card_brand",
        "installments": "installments",
        "surcharge_pct": "surcharge_pct",
        "deposit_cents": "deposit_cents",
    }
    return {flat for flat, nested_key in mapping.items() if flat in payload or nested_key in nested}


def parse_payment_entry(raw: Any, *, default_currency: str | None = None) -> PaymentEntry:
    """
    One explicit payment. Method and currency are normalized (lower/upper);
    amount > 0 and enum membership are enforced by the ledger.
    """
    if not isinstance(raw, dict):
        raise ValidationError("payment_must_be_object")
    method = _method(raw.get("method"), "payment_method")
    if method is None:
        raise ValidationError("payment_method_required")
    currency = _currency(raw.get("currency"), "payment_currency") or default_currency or Currency.ARS.value
    return PaymentEntry(
        method=method,
        currency=currency,
        amount_cents=require_cents(raw.get("amount_cents"), "amount_cents"),
        card_brand=optional_text(raw.get("card_brand"), "card_brand", max_length=32),
        installments=require_int(raw.get("installments"), "installments", allow_none=True),
        surcharge_pct=require_decimal(raw.get("surcharge_pct"), "surcharge_pct"),
        note=optional_text(raw.get("note"), "note", max_length=255),
    )


def _trade_in(value: Any, sale_fx: Decimal | None) -> TradeInBlock | None:
    block = require_object(value, "trade_in")
    if not block or not block.get("enabled"):
        return None
    device = require_object(block.get("device"), "trade_in_device", allow_none=False)
    if not optional_text(device.get("brand"), "trade_in_brand") or not optional_text(device.get("model"), "trade_in_model"):
        raise ValidationError("trade_in_device_brand_and_model_required")
    value_cents = require_cents(block.get("trade_value_usd_cents"), "trade_value_usd_cents")
    if value_cents < 0:
        raise ValidationError("trade_value_usd_cents_must_be_gte_0")
    fx = _positive_fx(block.get("fx_rate_used")) or sale_fx
    return TradeInBlock(device=dict(device), trade_value_usd_cents=value_cents, fx_rate_used=fx)


def _customer_ref(payload: dict) -> tuple[int | None, str | None, str | None]:
    customer_id = require_int(payload.get("customer_id"), "customer_id", allow_none=True)
    if customer_id is not None:
        return customer_id, None, None
    customer = require_object(payload.get("customer"), "customer") or {}
    return (
        None,
        optional_text(customer.get("name"), "customer_name", max_length=160),
        optional_text(customer.get("phone"), "customer_phone", max_length=32),
    )


# =============================================================================
# REQUEST PARSERS
# =============================================================================

def parse_create_sale(payload: dict):
    try:
        sale_date = require_datetime(payload.get("sale_date"), "sale_date")
        items = _items(payload.get("items"))
        customer_id, customer_name, customer_phone = _customer_ref(payload)
        if customer_id is None and not (customer_name and customer_phone):
            raise ValidationError("customer_name_and_phone_required")

        currency = _currency(payload.get("currency")) or Currency.ARS.value
        fx = _positive_fx(payload.get("fx_rate_used"))
        if currency == Currency.USD.value and fx is None:
            raise ValidationError("fx_rate_required_for_usd")

        payments = None
        if "payments" in payload and payload["payments"] is not None:
            if not isinstance(payload["payments"], list):
                raise ValidationError("payments_must_be_list")
            if not payload["payments"]:
                raise ValidationError("payments_required")
            payments = [parse_payment_entry(raw, default_currency=currency) for raw in payload["payments"]]

        return CreateSaleRequest(
            sale_date=sale_date,
            items=items,
            customer_id=customer_id,
            customer_name=customer_name,
            customer_phone=customer_phone,
            seller_id=require_int(payload.get("seller_id"), "seller_id", allow_none=True),
            declared_total_cents=require_cents(payload.get("total_cents"), "total_cents", allow_none=True),
            currency=currency,
            fx_rate_used=fx,
            terms=_terms(payload),
            payments=payments,
            trade_in=_trade_in(payload.get("trade_in"), fx),
            notes=optional_text(payload.get("notes"), "notes"),
            details=optional_text(payload.get("details"), "details"),
        )
    except ValidationError as exc:
        return validation_failure(str(exc))


def parse_update_sale(payload: dict):
    try:
        request = UpdateSaleRequest()
        if "sale_date" in payload:
            request.sale_date = require_datetime(payload.get("sale_date"), "sale_date")
            request.provided.add("sale_date")
        if "items" in payload:
            request.items = _items(payload.get("items"))
            request.provided.add("items")
        if "customer_id" in payload or "customer" in payload:
            customer_id, name, phone = _customer_ref(payload)
            if customer_id is None and not (name and phone):
                raise ValidationError("customer_name_and_phone_required")
            request.customer_id, request.customer_name, request.customer_phone = customer_id, name, phone
            request.provided.add("customer_id" if customer_id is not None else "customer")
        if "seller_id" in payload:
            request.seller_id = require_int(payload.get("seller_id"), "seller_id")
            request.provided.add("seller_id")
        if "total_cents" in payload:
            request.declared_total_cents = require_cents(payload.get("total_cents"), "total_cents", allow_none=True)
            request.provided.add("total_cents")
        if "currency" in payload:
            request.currency = _currency(payload.get("currency")) or Currency.ARS.value
            request.provided.add("currency")
        if "fx_rate_used" in payload:
            request.fx_rate_used = _positive_fx(payload.get("fx_rate_used"))
            request.provided.add("fx_rate_used")
        for key in ("notes", "details"):
            if key in payload:
                setattr(request, key, optional_text(payload.get(key), key))
                request.provided.add(key)

        terms_provided = _terms_provided(payload)
        if terms_provided:
            request.terms = _terms(payload)
            request.provided.update(terms_provided)

        if "payments" in payload:
            raise ValidationError("payments_not_allowed_on_update")
        return request
    except ValidationError as exc:
        return validation_failure(str(exc))


def parse_register_payment(payload: dict):
    try:
        return parse_payment_entry(payload)
    except ValidationError as exc:
        return validation_failure(str(exc))


def parse_settle(payload: dict):
    """method defaults to transfer, currency to ARS, note to settle_sale."""
    try:
        return {
            "method": _method(payload.get("method"), "payment_method") or PaymentMethod.TRANSFER.value,
            "currency": _currency(payload.get("currency")) or Currency.ARS.value,
            "note": optional_text(payload.get("note"), "note", max_length=255) or "settle_sale",
        }
    except ValidationError as exc:
        return validation_failure(str(exc))


def parse_cancel(payload: dict, *, min_reason_length: int):
    try:
        reason = optional_text(payload.get("reason"), "reason", max_length=255)
    except ValidationError as exc:
        return validation_failure(str(exc))
    if reason is None or len(reason) < min_reason_length:
        return validation_failure("cancel_reason_required")
    return reason
