# Overview: Service-layer operations for sales; the sale lifecycle orchestrator.

"""
Sale Lifecycle Orchestrator

WHY: Creating, editing, cancelling and paying a sale touches stock units,
warranties, payments, the receivable and the audit trail. Each operation runs
as ONE unit of work so that any failure leaves no partial state behind.

LIFECYCLE:
1. COMPLETED: created with its units claimed and checkout payments posted
2. COMPLETED: edited, paid, settled (any number of times)
3. CANCELLED: units released, warranties removed, receivable closed
   (terminal; a cancelled sale rejects edits and payments)

LOCK ORDER: the sale row first, then stock units in request order.

Create, register-payment and settle accept an idempotency key; a retried
request with the same key replays the first response instead of running again.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from ..extensions import db
from ..models import Payment, Sale, SaleItem, TradeIn, Warranty
from ..models.enums import AuditAction, Currency, PaymentMethod, ReceivableStatus, SaleStatus, StockStatus
from ..results import (
    ErrorCode,
    Failure,
    PaymentRegistered,
    Replayed,
    SaleCancelled,
    SaleCreated,
    SaleUpdated,
    not_found,
    validation_failure,
)
from ..time_utils import utcnow, warranty_window
from .audit_service import AuditRecorder
from .concurrency import lock_for_update, run_atomic
from .customer_service import resolve_customer, resolve_seller
from .idempotency_service import MAX_KEY_LENGTH, Conflict, IdempotencyCoordinator, InProgress, Replay
from .inventory_locker import Claimed, InventoryLocker
from .payment_ledger import PaymentLedger, Posted, usd_equivalent_cents
from .sale_schemas import (
    parse_cancel,
    parse_create_sale,
    parse_register_payment,
    parse_settle,
    parse_update_sale,
)

logger = logging.getLogger(__name__)

ENTITY_SALE = "sale"
ENTITY_STOCK_ITEM = "stock_item"


def _sale_not_found() -> Failure:
    return not_found("sale_not_found", "Sale not found")


def _sale_cancelled(detail: str) -> Failure:
    return Failure(ErrorCode.CONFLICT, "Sale is cancelled", detail)


def _total_mismatch(declared: int, computed: int) -> Failure:
    return Failure(
        ErrorCode.TOTAL_MISMATCH,
        "Declared total does not match the sum of the items",
        {"declared_total_cents": declared, "computed_total_cents": computed},
    )


class SaleOrchestrator:
    def __init__(
        self,
        *,
        audit: AuditRecorder,
        idempotency: IdempotencyCoordinator,
        locker: InventoryLocker | None = None,
        ledger: PaymentLedger | None = None,
        default_warranty_days: int = 90,
        total_tolerance_cents: int = 1,
        cancel_reason_min_length: int = 3,
        now: Callable = utcnow,
    ):
        self.audit = audit
        self.idempotency = idempotency
        self.locker = locker or InventoryLocker()
        self.ledger = ledger or PaymentLedger()
        self.default_warranty_days = default_warranty_days
        self.total_tolerance_cents = total_tolerance_cents
        self.cancel_reason_min_length = cancel_reason_min_length
        self.now = now

    # =========================================================================
    # IDEMPOTENCY
    # =========================================================================

    def _idempotent(self, actor_user_id: int, route: str, key: str | None, payload: Any, operation):
        """
        Run operation at most once per (actor, route, key).

        Both successes and expected failures are stored and replayed. An
        unexpected exception abandons the reservation so the client can retry.
        """
        if not key:
            return operation()
        if len(key) > MAX_KEY_LENGTH:
            return validation_failure("idempotency_key_too_long")

        outcome = self.idempotency.begin(actor_user_id, route, key, payload)
        if isinstance(outcome, Replay):
            return Replayed(outcome.status, outcome.body)
        if isinstance(outcome, (Conflict, InProgress)):
            return outcome.to_failure()

        try:
            result = operation()
        except Exception:
            try:
                self.idempotency.abandon(outcome.reservation_id)
            except Exception:
                logger.exception("Could not abandon idempotency reservation %s", outcome.reservation_id)
            raise

        body, status = result.to_response()
        self.idempotency.complete(outcome.reservation_id, status, body)
        return result

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _lock_sale(self, sale_id: int) -> Sale | None:
        return lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()

    def _total_matches(self, declared: int | None, computed: int) -> bool:
        return declared is None or abs(declared - computed) <= self.total_tolerance_cents

    def _insert_items(self, sale: Sale, items, claimed: Claimed) -> list[Warranty]:
        """SaleItem + Warranty per claimed unit, using the claim-time snapshot."""
        snapshots = {snap.stock_item_id: snap for snap in claimed.snapshots}
        warranties = []
        for item in items:
            snap = snapshots[item.stock_item_id]
            db.session.add(SaleItem(
                sale_id=sale.id,
                stock_item_id=item.stock_item_id,
                quantity=item.quantity,
                unit_price_cents=item.sale_price_cents,
                subtotal_cents=item.subtotal_cents,
                unit_cost_cents=snap.unit_cost_cents,
            ))
            warranty_days = snap.warranty_days if snap.warranty_days is not None else self.default_warranty_days
            start, end = warranty_window(sale.sale_date, warranty_days)
            warranty = Warranty(
                sale_id=sale.id,
                stock_item_id=item.stock_item_id,
                customer_id=sale.customer_id,
                warranty_days=warranty_days,
                start_date=start,
                end_date=end,
            )
            db.session.add(warranty)
            warranties.append(warranty)
        db.session.flush()
        return warranties

    def _remove_items(self, sale: Sale) -> tuple[list[int], int]:
        """Release the sale's units and delete its items and warranties."""
        items = db.session.query(SaleItem).filter_by(sale_id=sale.id).order_by(SaleItem.id.asc()).all()
        released = self.locker.release([item.stock_item_id for item in items], sale_id=sale.id)
        warranties_removed = self._delete_warranties(sale)
        for item in items:
            db.session.delete(item)
        db.session.flush()
        return released, warranties_removed

    def _delete_warranties(self, sale: Sale) -> int:
        warranties = db.session.query(Warranty).filter_by(sale_id=sale.id).all()
        for warranty in warranties:
            db.session.delete(warranty)
        return len(warranties)

    def _currency_failure(self, sale: Sale) -> Failure | None:
        """USD sales, and sales holding USD payments, need a positive fx rate."""
        if sale.fx_rate_used is not None and sale.fx_rate_used > 0:
            return None
        if Currency(sale.currency) == Currency.USD:
            return validation_failure("fx_rate_required_for_usd")
        usd_payment = (
            db.session.query(Payment.id)
            .filter(Payment.sale_id == sale.id, Payment.currency == Currency.USD)
            .first()
        )
        if usd_payment is not None:
            return validation_failure("fx_rate_required_for_usd_payments")
        return None

    def _refresh_usd_total(self, sale: Sale) -> None:
        if Currency(sale.currency) == Currency.USD:
            sale.total_usd_cents = usd_equivalent_cents(sale.total_cents, sale.fx_rate_used)
        else:
            sale.total_usd_cents = None

    @staticmethod
    def _state(sale: Sale) -> dict:
        """Compact, JSON-safe view of the sale for audit before/after."""
        return {
            "status": SaleStatus(sale.status).value,
            "customer_id": sale.customer_id,
            "seller_id": sale.seller_id,
            "sale_date": sale.sale_date.isoformat() if sale.sale_date else None,
            "currency": Currency(sale.currency).value,
            "fx_rate_used": str(sale.fx_rate_used) if sale.fx_rate_used is not None else None,
            "payment_method": PaymentMethod(sale.payment_method).value,
            "total_cents": sale.total_cents,
            "deposit_cents": sale.deposit_cents,
            "paid_cents": sale.paid_cents,
            "balance_due_cents": sale.balance_due_cents,
            "receivable_status": ReceivableStatus(sale.receivable_status).value,
        }

    def _audit_stock(self, actor_user_id: int, sale: Sale, stock_item_ids: list[int], new_status: StockStatus) -> None:
        previous = StockStatus.SOLD if new_status == StockStatus.AVAILABLE else StockStatus.AVAILABLE
        for stock_item_id in stock_item_ids:
            self.audit.record(
                actor_user_id,
                AuditAction.STOCK_STATE_CHANGED,
                ENTITY_STOCK_ITEM,
                stock_item_id,
                before={"status": previous.value},
                after={"status": new_status.value, "sale_id": sale.id if new_status == StockStatus.SOLD else None},
                meta={"sale_id": sale.id, "new_status": new_status.value},
            )

    # =========================================================================
    # CREATE
    # =========================================================================

    def create_sale(self, actor_user_id: int, payload: dict, idempotency_key: str | None = None):
        return self._idempotent(
            actor_user_id,
            "POST /api/sales",
            idempotency_key,
            payload,
            lambda: self._create_sale(actor_user_id, payload),
        )

    def _create_sale(self, actor_user_id: int, payload: dict):
        request = parse_create_sale(payload)
        if isinstance(request, Failure):
            return request

        computed_total = sum(item.subtotal_cents for item in request.items)
        if not self._total_matches(request.declared_total_cents, computed_total):
            return _total_mismatch(request.declared_total_cents, computed_total)

        def _op():
            seller = resolve_seller(request.seller_id or actor_user_id)
            if isinstance(seller, Failure):
                return seller
            customer = resolve_customer(request.customer_id, request.customer_name, request.customer_phone)
            if isinstance(customer, Failure):
                return customer

            terms = request.terms
            sale = Sale(
                sale_date=request.sale_date,
                customer_id=customer.id,
                seller_id=seller.id,
                created_by_user_id=actor_user_id,
                payment_method=PaymentMethod(terms.method or PaymentMethod.CASH.value),
                card_brand=terms.card_brand,
                installments=terms.installments,
                surcharge_pct=terms.surcharge_pct,
                currency=Currency(request.currency),
                fx_rate_used=request.fx_rate_used,
                declared_total_cents=request.declared_total_cents,
                total_cents=computed_total,
                deposit_cents=terms.deposit_cents,
                paid_cents=0,
                balance_due_cents=computed_total,
                receivable_status=ReceivableStatus.PENDING,
                status=SaleStatus.COMPLETED,
                notes=request.notes,
                details=request.details,
            )
            self._refresh_usd_total(sale)
            db.session.add(sale)
            db.session.flush()  # Get sale ID

            stock_item_ids = [item.stock_item_id for item in request.items]
            claimed = self.locker.claim(sale, stock_item_ids, request.sale_date)
            if not isinstance(claimed, Claimed):
                return claimed.to_failure()
            warranties = self._insert_items(sale, request.items, claimed)

            entries = request.payments if request.payments is not None else self.ledger.synthesize_entries(sale)
            posted = self.ledger.post(sale, entries, actor_user_id)
            if not isinstance(posted, Posted):
                return validation_failure(posted.reason)
            receivable = self.ledger.recompute(sale)

            trade_in_id = None
            if request.trade_in is not None:
                trade_in = TradeIn(
                    sale_id=sale.id,
                    device=request.trade_in.device,
                    trade_value_usd_cents=request.trade_in.trade_value_usd_cents,
                    fx_rate_used=request.trade_in.fx_rate_used,
                    status="valued",
                    customer_name=customer.name,
                    customer_phone=customer.phone,
                )
                db.session.add(trade_in)
                db.session.flush()
                trade_in_id = trade_in.id

            self.audit.record(
                actor_user_id, AuditAction.SALE_CREATED, ENTITY_SALE, sale.id,
                after=self._state(sale),
                meta={"items_count": len(stock_item_ids), "trade_in_id": trade_in_id},
            )
            self._audit_stock(actor_user_id, sale, stock_item_ids, StockStatus.SOLD)
            self.audit.record(
                actor_user_id, AuditAction.PAYMENT_REGISTERED, ENTITY_SALE, sale.id,
                meta={
                    "payments_count": len(posted.payment_ids),
                    "payment_ids": posted.payment_ids,
                    "source": "checkout",
                },
            )
            self.audit.record(
                actor_user_id, AuditAction.WARRANTY_STATUS_CHANGED, ENTITY_SALE, sale.id,
                meta={"event": "created_from_sale", "warranties_count": len(warranties)},
            )

            return SaleCreated(
                sale_id=sale.id,
                customer_id=customer.id,
                seller_id=seller.id,
                trade_in_id=trade_in_id,
                total_cents=sale.total_cents,
                total_usd_cents=sale.total_usd_cents,
                currency=Currency(sale.currency).value,
                fx_rate_used=str(sale.fx_rate_used) if sale.fx_rate_used is not None else None,
                receivable=receivable,
                items_applied=stock_item_ids,
            )

        result = run_atomic(_op)
        if isinstance(result, SaleCreated):
            logger.info("Sale %s created by user %s (total=%s)", result.sale_id, actor_user_id, result.total_cents)
        return result

    # =========================================================================
    # UPDATE
    # =========================================================================

    def update_sale(self, actor_user_id: int, sale_id: int, payload: dict):
        request = parse_update_sale(payload)
        if isinstance(request, Failure):
            return request

        def _op():
            sale = self._lock_sale(sale_id)
            if sale is None:
                return _sale_not_found()
            if sale.is_cancelled:
                return _sale_cancelled("sale_already_cancelled")

            before = self._state(sale)
            provided = request.provided

            if "seller_id" in provided:
                seller = resolve_seller(request.seller_id)
                if isinstance(seller, Failure):
                    return seller
                sale.seller_id = seller.id

            customer_changed = False
            if request.changes_customer:
                customer = resolve_customer(request.customer_id, request.customer_name, request.customer_phone)
                if isinstance(customer, Failure):
                    return customer
                customer_changed = customer.id != sale.customer_id
                sale.customer_id = customer.id

            date_changed = "sale_date" in provided and request.sale_date != sale.sale_date
            if "sale_date" in provided:
                sale.sale_date = request.sale_date
            if "currency" in provided:
                sale.currency = Currency(request.currency)
            if "fx_rate_used" in provided:
                sale.fx_rate_used = request.fx_rate_used
            failure = self._currency_failure(sale)
            if failure:
                return failure

            terms = request.terms
            if "payment_method" in provided:
                sale.payment_method = PaymentMethod(terms.method or PaymentMethod.CASH.value)
            if "card_brand" in provided:
                sale.card_brand = terms.card_brand
            if "installments" in provided:
                sale.installments = terms.installments
            if "surcharge_pct" in provided:
                sale.surcharge_pct = terms.surcharge_pct
            if "deposit_cents" in provided:
                sale.deposit_cents = terms.deposit_cents
            if "notes" in provided:
                sale.notes = request.notes
            if "details" in provided:
                sale.details = request.details

            released, claimed_ids, warranties_removed = [], [], 0
            if request.items is not None:
                released, warranties_removed = self._remove_items(sale)
                claimed_ids = [item.stock_item_id for item in request.items]
                claimed = self.locker.claim(sale, claimed_ids, sale.sale_date)
                if not isinstance(claimed, Claimed):
                    return claimed.to_failure()
                self._insert_items(sale, request.items, claimed)
                total = sum(item.subtotal_cents for item in request.items)
            else:
                items = db.session.query(SaleItem).filter_by(sale_id=sale.id).all()
                total = sum(item.subtotal_cents for item in items)
                if customer_changed or date_changed:
                    for warranty in db.session.query(Warranty).filter_by(sale_id=sale.id).all():
                        warranty.customer_id = sale.customer_id
                        warranty.start_date, warranty.end_date = warranty_window(sale.sale_date, warranty.warranty_days)
                if date_changed:
                    self.locker.restamp(sale, sale.sale_date)

            if "total_cents" in provided:
                if not self._total_matches(request.declared_total_cents, total):
                    return _total_mismatch(request.declared_total_cents, total)
                sale.declared_total_cents = request.declared_total_cents

            sale.total_cents = total
            self._refresh_usd_total(sale)
            sale.updated_at = self.now()
            sale.updated_by_user_id = actor_user_id
            receivable = self.ledger.recompute(sale)

            self.audit.record(
                actor_user_id, AuditAction.SALE_UPDATED, ENTITY_SALE, sale.id,
                before=before,
                after=self._state(sale),
                meta={"fields": sorted(provided)},
            )
            if request.items is not None:
                self._audit_stock(actor_user_id, sale, released, StockStatus.AVAILABLE)
                self._audit_stock(actor_user_id, sale, claimed_ids, StockStatus.SOLD)
                self.audit.record(
                    actor_user_id, AuditAction.WARRANTY_STATUS_CHANGED, ENTITY_SALE, sale.id,
                    meta={
                        "event": "replaced_from_sale_update",
                        "warranties_removed": warranties_removed,
                        "warranties_count": len(claimed_ids),
                    },
                )

            return SaleUpdated(
                sale_id=sale.id,
                customer_id=sale.customer_id,
                total_cents=sale.total_cents,
                status=SaleStatus(sale.status).value,
                receivable=receivable,
                items_replaced=request.items is not None,
            )

        return run_atomic(_op)

    # =========================================================================
    # CANCEL
    # =========================================================================

    def cancel_sale(self, actor_user_id: int, sale_id: int, payload: dict):
        """
        Reverse every side effect of the sale. Repeating it is a no-op.

        Payments stay on record (paid is unchanged); the receivable is closed.
        """
        reason = parse_cancel(payload, min_reason_length=self.cancel_reason_min_length)
        if isinstance(reason, Failure):
            return reason

        def _op():
            sale = self._lock_sale(sale_id)
            if sale is None:
                return _sale_not_found()
            if sale.is_cancelled:
                return SaleCancelled(sale_id=sale.id, status=SaleStatus.CANCELLED.value, already_cancelled=True)

            before = self._state(sale)
            items = db.session.query(SaleItem).filter_by(sale_id=sale.id).order_by(SaleItem.id.asc()).all()
            released = self.locker.release([item.stock_item_id for item in items], sale_id=sale.id)
            warranties_removed = self._delete_warranties(sale)

            now = self.now()
            sale.status = SaleStatus.CANCELLED
            sale.cancel_reason = reason
            sale.cancelled_by_user_id = actor_user_id
            sale.cancelled_at = now
            sale.updated_at = now
            sale.updated_by_user_id = actor_user_id
            self.ledger.recompute(sale)

            self.audit.record(
                actor_user_id, AuditAction.SALE_CANCELLED, ENTITY_SALE, sale.id,
                before=before,
                after=self._state(sale),
                meta={"reason": reason},
            )
            self._audit_stock(actor_user_id, sale, released, StockStatus.AVAILABLE)
            self.audit.record(
                actor_user_id, AuditAction.WARRANTY_STATUS_CHANGED, ENTITY_SALE, sale.id,
                meta={"event": "cancelled", "warranties_removed": warranties_removed},
            )

            return SaleCancelled(
                sale_id=sale.id,
                status=SaleStatus.CANCELLED.value,
                released_stock_item_ids=released,
            )

        result = run_atomic(_op)
        if isinstance(result, SaleCancelled) and not result.already_cancelled:
            logger.info("Sale %s cancelled by user %s", sale_id, actor_user_id)
        return result

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    def register_payment(self, actor_user_id: int, sale_id: int, payload: dict, idempotency_key: str | None = None):
        return self._idempotent(
            actor_user_id,
            f"POST /api/sales/{sale_id}/payments",
            idempotency_key,
            payload,
            lambda: self._register_payment(actor_user_id, sale_id, payload),
        )

    def _register_payment(self, actor_user_id: int, sale_id: int, payload: dict):
        entry = parse_register_payment(payload)
        if isinstance(entry, Failure):
            return entry

        def _op():
            sale = self._lock_sale(sale_id)
            if sale is None:
                return _sale_not_found()
            if sale.is_cancelled:
                return _sale_cancelled("sale_cancelled")

            posted = self.ledger.post(sale, [entry], actor_user_id)
            if not isinstance(posted, Posted):
                return validation_failure(posted.reason)
            receivable = self.ledger.recompute(sale)

            self.audit.record(
                actor_user_id, AuditAction.PAYMENT_REGISTERED, ENTITY_SALE, sale.id,
                after=receivable.to_dict(),
                meta={
                    "payment_ids": posted.payment_ids,
                    "method": entry.method,
                    "currency": entry.currency,
                    "amount_cents": entry.amount_cents,
                    "source": "register_payment",
                },
            )
            return PaymentRegistered(sale_id=sale.id, payment_id=posted.payment_ids[0], receivable=receivable)

        return run_atomic(_op)

    def settle_sale(self, actor_user_id: int, sale_id: int, payload: dict, idempotency_key: str | None = None):
        return self._idempotent(
            actor_user_id,
            f"POST /api/sales/{sale_id}/settle",
            idempotency_key,
            payload,
            lambda: self._settle_sale(actor_user_id, sale_id, payload),
        )

    def _settle_sale(self, actor_user_id: int, sale_id: int, payload: dict):
        options = parse_settle(payload)
        if isinstance(options, Failure):
            return options

        def _op():
            sale = self._lock_sale(sale_id)
            if sale is None:
                return _sale_not_found()
            if sale.is_cancelled:
                return _sale_cancelled("sale_cancelled")

            posted = self.ledger.settle(
                sale,
                method=options["method"],
                currency=options["currency"],
                note=options["note"],
                actor_user_id=actor_user_id,
            )
            if not isinstance(posted, Posted):
                return validation_failure(posted.reason)

            payment_id = posted.payment_ids[0] if posted.payment_ids else None
            receivable = self.ledger.recompute(sale)
            if payment_id is not None:
                self.audit.record(
                    actor_user_id, AuditAction.PAYMENT_REGISTERED, ENTITY_SALE, sale.id,
                    after=receivable.to_dict(),
                    meta={
                        "payment_ids": posted.payment_ids,
                        "method": options["method"],
                        "currency": options["currency"],
                        "source": "settle_sale",
                    },
                )
            return PaymentRegistered(sale_id=sale.id, payment_id=payment_id, receivable=receivable, http_status=200)

        return run_atomic(_op)

    # =========================================================================
    # READ
    # =========================================================================

    def get_sale(self, sale_id: int):
        sale = db.session.get(Sale, sale_id)
        if sale is None:
            return _sale_not_found()
        data = sale.to_dict()
        data["items"] = [
            item.to_dict()
            for item in db.session.query(SaleItem).filter_by(sale_id=sale.id).order_by(SaleItem.id.asc())
        ]
        data["payments"] = [p.to_dict() for p in sorted(sale.payments, key=lambda p: p.id)]
        data["warranties"] = [
            w.to_dict()
            for w in db.session.query(Warranty).filter_by(sale_id=sale.id).order_by(Warranty.id.asc())
        ]
        data["trade_ins"] = [
            t.to_dict()
            for t in db.session.query(TradeIn).filter_by(sale_id=sale.id).order_by(TradeIn.id.asc())
        ]
        return data
