from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z
from .enums import (
    Currency,
    PaymentMethod,
    ReceivableStatus,
    SaleStatus,
    enum_column,
)


def _value(member):
    return member.value if member is not None else None


def _decimal_str(value):
    return str(value) if value is not None else None


class Sale(db.Model):
    """
    Sale document for serialized stock.

    WHY: The sale row carries the receivable snapshot (paid, balance,
    receivable_status) so finance reads never have to re-aggregate payments.

    INVARIANTS:
    - total_cents == sum(SaleItem.subtotal_cents)
    - balance_due_cents == max(total_cents - paid_cents, 0)
    - receivable_status is derived by the payment ledger, never set by hand
      (cancellation forces PAID)

    All amounts are ARS cents; fx_rate_used converts USD into ARS.
    Sales are never deleted; cancellation is a status transition.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_sale_date", "sale_date"),
        db.Index("ix_sales_status_receivable", "status", "receivable_status"),
        db.CheckConstraint(
            "currency <> 'USD' OR fx_rate_used > 0",
            name="ck_sales_usd_requires_fx",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_date = db.Column(db.DateTime(timezone=True), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    # Checkout payment metadata (the payments table is authoritative for money)
    payment_method = db.Column(enum_column(PaymentMethod, "ck_sales_payment_method"), nullable=False, default=PaymentMethod.CASH)
    card_brand = db.Column(db.String(32), nullable=True)
    installments = db.Column(db.Integer, nullable=True)
    surcharge_pct = db.Column(db.Numeric(7, 2), nullable=True)

    currency = db.Column(enum_column(Currency, "ck_sales_currency"), nullable=False, default=Currency.ARS)
    fx_rate_used = db.Column(db.Numeric(14, 4), nullable=True)

    # Money (ARS cents)
    declared_total_cents = db.Column(db.Integer, nullable=True)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    total_usd_cents = db.Column(db.Integer, nullable=True)
    deposit_cents = db.Column(db.Integer, nullable=True)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_due_cents = db.Column(db.Integer, nullable=False, default=0)
    receivable_status = db.Column(
        enum_column(ReceivableStatus, "ck_sales_receivable_status"),
        nullable=False,
        default=ReceivableStatus.PENDING,
        index=True,
    )

    # Lifecycle
    status = db.Column(enum_column(SaleStatus, "ck_sales_status"), nullable=False, default=SaleStatus.COMPLETED, index=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    details = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_cancelled(self) -> bool:
        return self.status == SaleStatus.CANCELLED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_date": to_utc_z(self.sale_date),
            "customer_id": self.customer_id,
            "seller_id": self.seller_id,
            "created_by_user_id": self.created_by_user_id,
            "payment_method": _value(self.payment_method),
            "card_brand": self.card_brand,
            "installments": self.installments,
            "surcharge_pct": _decimal_str(self.surcharge_pct),
            "currency": _value(self.currency),
            "fx_rate_used": _decimal_str(self.fx_rate_used),
            "declared_total_cents": self.declared_total_cents,
            "total_cents": self.total_cents,
            "total_usd_cents": self.total_usd_cents,
            "deposit_cents": self.deposit_cents,
            "paid_cents": self.paid_cents,
            "balance_due_cents": self.balance_due_cents,
            "receivable_status": _value(self.receivable_status),
            "status": _value(self.status),
            "cancel_reason": self.cancel_reason,
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "notes": self.notes,
            "details": self.details,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "updated_by_user_id": self.updated_by_user_id,
            "version_id": self.version_id,
        }


class SaleItem(db.Model):
    """
    One serialized unit on a sale.

    unit_cost_cents is a snapshot of the stock unit's purchase cost taken at
    claim time; it is never refreshed, so margin reports stay stable.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.Index("ix_sale_items_sale_stock", "sale_id", "stock_item_id"),
        db.CheckConstraint("quantity = 1", name="ck_sale_items_serialized_qty"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    stock_item_id = db.Column(db.Integer, db.ForeignKey("stock_items.id", ondelete="RESTRICT"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("items", lazy=True))
    stock_item = db.relationship("StockItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "stock_item_id": self.stock_item_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "created_at": to_utc_z(self.created_at),
        }


class Payment(db.Model):
    """
    Money received against a sale.

    IMMUTABLE: corrections are new rows, never edits. Amounts are in the
    payment's own currency; the ledger converts USD with the sale's fx rate.
    """
    __tablename__ = "sale_payments"
    __table_args__ = (
        db.Index("ix_sale_payments_sale_created", "sale_id", "created_at"),
        db.CheckConstraint("amount_cents > 0", name="ck_sale_payments_amount_positive"),
        db.CheckConstraint("installments IS NULL OR installments >= 1", name="ck_sale_payments_installments"),
        db.CheckConstraint("surcharge_pct IS NULL OR surcharge_pct >= 0", name="ck_sale_payments_surcharge"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)

    method = db.Column(enum_column(PaymentMethod, "ck_sale_payments_method"), nullable=False, index=True)
    currency = db.Column(enum_column(Currency, "ck_sale_payments_currency"), nullable=False, default=Currency.ARS)
    amount_cents = db.Column(db.Integer, nullable=False)

    card_brand = db.Column(db.String(32), nullable=True)
    installments = db.Column(db.Integer, nullable=True)
    surcharge_pct = db.Column(db.Numeric(7, 2), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    sale = db.relationship("Sale", backref=db.backref("payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "method": _value(self.method),
            "currency": _value(self.currency),
            "amount_cents": self.amount_cents,
            "card_brand": self.card_brand,
            "installments": self.installments,
            "surcharge_pct": _decimal_str(self.surcharge_pct),
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class Warranty(db.Model):
    """Warranty issued for a unit on a sale. Removed with the sale's items."""
    __tablename__ = "warranties"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    stock_item_id = db.Column(db.Integer, db.ForeignKey("stock_items.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    warranty_days = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "stock_item_id": self.stock_item_id,
            "customer_id": self.customer_id,
            "warranty_days": self.warranty_days,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "created_at": to_utc_z(self.created_at),
        }


class TradeIn(db.Model):
    """
    Used device accepted at checkout, recorded at its agreed USD value.

    Valuation and later conversion into sellable stock live outside the sale
    engine; this row only records what was agreed on the sale.
    """
    __tablename__ = "trade_ins"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id", ondelete="SET NULL"), nullable=True, index=True)

    device = db.Column(db.JSON, nullable=False, default=dict)
    trade_value_usd_cents = db.Column(db.Integer, nullable=False, default=0)
    fx_rate_used = db.Column(db.Numeric(14, 4), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="valued")

    customer_name = db.Column(db.String(160), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "device": self.device,
            "trade_value_usd_cents": self.trade_value_usd_cents,
            "fx_rate_used": _decimal_str(self.fx_rate_used),
            "status": self.status,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "created_at": to_utc_z(self.created_at),
        }
