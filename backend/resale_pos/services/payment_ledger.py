# Overview: Service-layer operations for the payment ledger; posts payments and derives the receivable.

"""
Payment Ledger

WHY: A sale can be paid in several steps and with several methods and
currencies (deposit in cash, rest by transfer, part in USD). The sale row only
stores the derived receivable; the payment rows are the source of truth.

DESIGN PRINCIPLES:
- Payments are immutable; corrections are new rows
- paid_cents is always re-derived from the full payment history
- USD payments are converted into ARS with the sale's fx_rate_used
- balance_due = max(total - paid, 0); overpayment never goes negative
- receivable_status: PAID if cancelled or balance <= 0,
  PARTIAL if anything was paid, else PENDING
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation

from ..extensions import db
from ..models import Payment
from ..models.enums import SETTLEMENT_CURRENCY, Currency, PaymentMethod, ReceivableStatus
from ..results import ReceivableSnapshot
from ..time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentEntry:
    method: str
    currency: str
    amount_cents: int
    card_brand: str | None = None
    installments: int | None = None
    surcharge_pct: Decimal | None = None
    note: str | None = None


@dataclass(frozen=True)
class Posted:
    payment_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationFailed:
    reason: str


# =============================================================================
# CURRENCY CONVERSION
# =============================================================================

def to_settlement_cents(amount_cents: int, currency, fx_rate) -> int:
    """Convert an amount in `currency` into ARS cents (half-up)."""
    if Currency(currency) == SETTLEMENT_CURRENCY:
        return int(amount_cents)
    if fx_rate is None or Decimal(fx_rate) <= 0:
        raise ValueError("fx_rate_used is required to convert USD amounts")
    converted = Decimal(amount_cents) * Decimal(fx_rate)
    return int(converted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_settlement_cents(ars_cents: int, currency, fx_rate) -> int:
    """
    Express an ARS amount in `currency`.

    Rounds up for USD so that paying the returned amount always covers the
    ARS balance after conversion back.
    """
    if Currency(currency) == SETTLEMENT_CURRENCY:
        return int(ars_cents)
    if fx_rate is None or Decimal(fx_rate) <= 0:
        raise ValueError("fx_rate_used is required to convert USD amounts")
    converted = Decimal(ars_cents) / Decimal(fx_rate)
    return int(converted.to_integral_value(rounding=ROUND_CEILING))


def usd_equivalent_cents(ars_cents: int, fx_rate) -> int | None:
    """Informational USD value of an ARS total (half-up); None without a rate."""
    if fx_rate is None or Decimal(fx_rate) <= 0:
        return None
    converted = Decimal(ars_cents) / Decimal(fx_rate)
    return int(converted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def derive_receivable_status(*, balance_due_cents: int, paid_cents: int, cancelled: bool) -> ReceivableStatus:
    if cancelled or balance_due_cents <= 0:
        return ReceivableStatus.PAID
    if paid_cents > 0:
        return ReceivableStatus.PARTIAL
    return ReceivableStatus.PENDING


def snapshot(sale) -> ReceivableSnapshot:
    return ReceivableSnapshot(
        paid_cents=sale.paid_cents,
        balance_due_cents=sale.balance_due_cents,
        receivable_status=ReceivableStatus(sale.receivable_status).value,
    )


class PaymentLedger:
    # =========================================================================
    # VALIDATION
    # =========================================================================

    def _validate(self, sale, entry: PaymentEntry) -> str | None:
        try:
            PaymentMethod(entry.method)
        except ValueError:
            return "payment_method_invalid"
        try:
            currency = Currency(entry.currency)
        except ValueError:
            return "payment_currency_invalid"
        if isinstance(entry.amount_cents, bool) or not isinstance(entry.amount_cents, int):
            return "payment_amount_invalid"
        if entry.amount_cents <= 0:
            return "payment_amount_must_be_gt_0"
        if entry.installments is not None and entry.installments < 1:
            return "installments_must_be_gte_1"
        if entry.surcharge_pct is not None:
            try:
                if Decimal(entry.surcharge_pct) < 0:
                    return "surcharge_pct_must_be_gte_0"
            except InvalidOperation:
                return "surcharge_pct_invalid"
        if currency != SETTLEMENT_CURRENCY and (sale.fx_rate_used is None or Decimal(sale.fx_rate_used) <= 0):
            return "fx_rate_required_for_usd_payment"
        return None

    # =========================================================================
    # POSTING
    # =========================================================================

    def post(self, sale, entries: list[PaymentEntry], actor_user_id: int | None):
        """
        Append payment rows for the sale.

        All entries are validated before any row is added, so a bad entry
        never leaves a partial set behind. Does not recompute; callers do.
        """
        for entry in entries:
            reason = self._validate(sale, entry)
            if reason:
                return ValidationFailed(reason)

        created_at = utcnow()
        payments = []
        for entry in entries:
            payment = Payment(
                sale_id=sale.id,
                method=PaymentMethod(entry.method),
                currency=Currency(entry.currency),
                amount_cents=entry.amount_cents,
                card_brand=entry.card_brand,
                installments=entry.installments,
                surcharge_pct=entry.surcharge_pct,
                note=entry.note,
                created_by_user_id=actor_user_id,
                created_at=created_at,
            )
            db.session.add(payment)
            payments.append(payment)

        db.session.flush()  # Get payment IDs
        return Posted([payment.id for payment in payments])

    def synthesize_entries(self, sale) -> list[PaymentEntry]:
        """
        Single checkout payment built from the sale's own payment metadata.

        Used when a new sale arrives without explicit payment entries: the
        deposit when 0 < deposit < total, otherwise the full total.
        """
        total = sale.total_cents or 0
        deposit = sale.deposit_cents or 0
        amount_ars = deposit if 0 < deposit < total else total
        if amount_ars <= 0:
            return []

        currency = Currency(sale.currency)
        return [PaymentEntry(
            method=PaymentMethod(sale.payment_method).value,
            currency=currency.value,
            amount_cents=from_settlement_cents(amount_ars, currency, sale.fx_rate_used),
            card_brand=sale.card_brand,
            installments=sale.installments,
            surcharge_pct=sale.surcharge_pct,
            note="checkout",
        )]

    # =========================================================================
    # RECEIVABLE
    # =========================================================================

    def recompute(self, sale) -> ReceivableSnapshot:
        """
        Re-derive paid, balance and receivable status from the payment rows.

        Idempotent: running it twice without new payments changes nothing.
        """
        payments = db.session.query(Payment).filter_by(sale_id=sale.id).all()
        paid = sum(
            to_settlement_cents(p.amount_cents, p.currency, sale.fx_rate_used)
            for p in payments
        )
        cancelled = sale.is_cancelled
        balance = 0 if cancelled else max((sale.total_cents or 0) - paid, 0)

        sale.paid_cents = paid
        sale.balance_due_cents = balance
        sale.receivable_status = derive_receivable_status(
            balance_due_cents=balance,
            paid_cents=paid,
            cancelled=cancelled,
        )
        db.session.flush()
        return snapshot(sale)

    def settle(self, sale, *, method: str, currency: str, note: str | None, actor_user_id: int | None):
        """
        Pay off the outstanding balance with one payment.

        No-op (Posted with no ids) when nothing is owed.
        """
        self.recompute(sale)
        if sale.balance_due_cents <= 0:
            return Posted([])

        try:
            settle_currency = Currency(currency)
        except ValueError:
            return ValidationFailed("payment_currency_invalid")
        if settle_currency != SETTLEMENT_CURRENCY and (sale.fx_rate_used is None or Decimal(sale.fx_rate_used) <= 0):
            return ValidationFailed("fx_rate_required_for_usd_payment")

        amount = from_settlement_cents(sale.balance_due_cents, settle_currency, sale.fx_rate_used)
        result = self.post(
            sale,
            [PaymentEntry(method=method, currency=settle_currency.value, amount_cents=amount, note=note)],
            actor_user_id,
        )
        if isinstance(result, Posted):
            self.recompute(sale)
            logger.info("Settled sale %s with payment %s", sale.id, result.payment_ids)
        return result
