from datetime import date, datetime

import pytest

from resale_pos.models import Customer, IdempotencyRecord, Payment, Sale, SaleItem, StockItem, TradeIn, Warranty
from resale_pos.models.enums import ReceivableStatus, SaleStatus, StockStatus
from resale_pos.results import (
    ErrorCode,
    Failure,
    PaymentRegistered,
    Replayed,
    SaleCancelled,
    SaleCreated,
    SaleUpdated,
)


def _details(result):
    assert isinstance(result, Failure), result
    return result.details


# =============================================================================
# CREATE
# =============================================================================

def test_create_sale_claims_stock_and_pays_in_full_by_default(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock(cost_cents=80000)

    result = orchestrator.create_sale(seller.id, sale_payload([unit.id], total_cents=120000))

    assert isinstance(result, SaleCreated)
    assert result.total_cents == 120000
    assert result.receivable.paid_cents == 120000
    assert result.receivable.balance_due_cents == 0
    assert result.receivable.receivable_status == "paid"
    assert result.items_applied == [unit.id]

    body, status = result.to_response()
    assert status == 201
    assert body["stock_synced"] is True

    stock = db_session.get(StockItem, unit.id)
    assert stock.status == StockStatus.SOLD
    assert stock.sale_id == result.sale_id

    item = db_session.query(SaleItem).filter_by(sale_id=result.sale_id).one()
    assert item.subtotal_cents == 120000
    assert item.unit_cost_cents == 80000


def test_total_equals_sum_of_items(orchestrator, seller, make_stock, sale_payload, db_session):
    units = [make_stock(), make_stock(), make_stock()]
    payload = sale_payload([u.id for u in units])
    payload["items"][1]["sale_price_cents"] = 99950

    result = orchestrator.create_sale(seller.id, payload)

    items = db_session.query(SaleItem).filter_by(sale_id=result.sale_id).all()
    assert result.total_cents == sum(i.subtotal_cents for i in items) == 120000 * 2 + 99950
    assert db_session.get(Sale, result.sale_id).total_cents == result.total_cents


def test_deposit_creates_partial_receivable(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    payload = sale_payload([unit.id], payment={"method": "transfer", "deposit_cents": 20000})
    del payload["payment_method"]

    result = orchestrator.create_sale(seller.id, payload)

    assert result.receivable.paid_cents == 20000
    assert result.receivable.balance_due_cents == 100000
    assert result.receivable.receivable_status == "partial"
    payment = db_session.query(Payment).filter_by(sale_id=result.sale_id).one()
    assert payment.method.value == "transfer"
    assert payment.amount_cents == 20000


def test_explicit_payments_replace_synthesized_entry(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    payload = sale_payload([unit.id], payments=[
        {"method": "cash", "currency": "ARS", "amount_cents": 30000},
        {"method": "card", "currency": "ARS", "amount_cents": 40000, "card_brand": "visa", "installments": 3},
    ])

    result = orchestrator.create_sale(seller.id, payload)

    assert result.receivable.paid_cents == 70000
    assert result.receivable.receivable_status == "partial"
    assert db_session.query(Payment).filter_by(sale_id=result.sale_id).count() == 2


def test_declared_total_mismatch_is_rejected(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()

    result = orchestrator.create_sale(seller.id, sale_payload([unit.id], total_cents=119000))

    assert result.code == ErrorCode.TOTAL_MISMATCH
    assert result.http_status == 422
    assert result.details == {"declared_total_cents": 119000, "computed_total_cents": 120000}
    assert db_session.query(Sale).count() == 0
    assert db_session.get(StockItem, unit.id).status == StockStatus.AVAILABLE


def test_declared_total_within_one_cent_is_accepted(orchestrator, seller, make_stock, sale_payload):
    unit = make_stock()
    result = orchestrator.create_sale(seller.id, sale_payload([unit.id], total_cents=120001))
    assert isinstance(result, SaleCreated)
    assert result.total_cents == 120000


@pytest.mark.parametrize("item_override, reason", [
    ({"qty": 0}, "qty_must_be_gte_1"),
    ({"qty": 2}, "qty_not_supported_for_serialized_stock"),
    ({"sale_price_cents": 0}, "sale_price_cents_must_be_gt_0"),
    ({"sale_price_cents": "12.5"}, "sale_price_cents_must_be_integer"),
])
def test_item_validation(orchestrator, seller, make_stock, sale_payload, db_session, item_override, reason):
    unit = make_stock()
    payload = sale_payload([unit.id])
    payload["items"][0].update(item_override)

    result = orchestrator.create_sale(seller.id, payload)

    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.details == reason
    assert db_session.query(Sale).count() == 0
    assert db_session.get(StockItem, unit.id).status == StockStatus.AVAILABLE


@pytest.mark.parametrize("override, reason", [
    ({"items": []}, "items_required"),
    ({"sale_date": None}, "sale_date_required"),
    ({"sale_date": "not-a-date"}, "sale_date_invalid"),
    ({"payments": []}, "payments_required"),
    ({"currency": "USD"}, "fx_rate_required_for_usd"),
    ({"currency": "EUR"}, "currency_invalid"),
    ({"fx_rate_used": "0"}, "fx_rate_used_must_be_gt_0"),
    ({"customer": {"name": "Ana"}}, "customer_name_and_phone_required"),
])
def test_sale_validation(orchestrator, seller, make_stock, sale_payload, db_session, override, reason):
    unit = make_stock()
    result = orchestrator.create_sale(seller.id, sale_payload([unit.id], **override))

    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.details == reason
    assert db_session.query(Sale).count() == 0


def test_duplicate_stock_ids_are_rejected(orchestrator, seller, make_stock, sale_payload):
    unit = make_stock()
    result = orchestrator.create_sale(seller.id, sale_payload([unit.id, unit.id]))
    assert result.details == "duplicate_stock_item_id"


def test_invalid_payment_entry_rolls_back_claims(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    payload = sale_payload([unit.id], payments=[{"method": "cash", "currency": "ARS", "amount_cents": 0}])

    result = orchestrator.create_sale(seller.id, payload)

    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.details == "payment_amount_must_be_gt_0"
    assert db_session.query(Sale).count() == 0
    assert db_session.get(StockItem, unit.id).status == StockStatus.AVAILABLE


def test_unavailable_unit_aborts_whole_sale(orchestrator, seller, make_stock, sale_payload, db_session):
    free = make_stock()
    busy = make_stock(status=StockStatus.SERVICE_TECH)

    result = orchestrator.create_sale(seller.id, sale_payload([free.id, busy.id]))

    assert result.code == ErrorCode.STOCK_CONFLICT
    assert result.details["stock_item_id"] == busy.id
    assert result.details["current_status"] == "service_tech"
    assert db_session.query(Sale).count() == 0
    assert db_session.query(Customer).count() == 0
    assert db_session.get(StockItem, free.id).status == StockStatus.AVAILABLE


def test_unknown_unit_is_not_found(orchestrator, seller, sale_payload):
    result = orchestrator.create_sale(seller.id, sale_payload([424242]))
    assert result.code == ErrorCode.NOT_FOUND
    assert result.details["stock_item_ids"] == [424242]


def test_unknown_customer_id_is_not_found(orchestrator, seller, make_stock, sale_payload):
    unit = make_stock()
    payload = sale_payload([unit.id], customer_id=999)
    del payload["customer"]

    result = orchestrator.create_sale(seller.id, payload)
    assert result.code == ErrorCode.NOT_FOUND
    assert result.details == "customer_not_found"


def test_unknown_seller_is_not_found(orchestrator, seller, make_stock, sale_payload):
    unit = make_stock()
    result = orchestrator.create_sale(seller.id, sale_payload([unit.id], seller_id=999))
    assert result.code == ErrorCode.NOT_FOUND
    assert result.details == "seller_not_found"


def test_seller_defaults_to_actor(orchestrator, seller, make_stock, sale_payload):
    unit = make_stock()
    result = orchestrator.create_sale(seller.id, sale_payload([unit.id]))
    assert result.seller_id == seller.id


def test_customer_is_reused_by_phone_and_name_refreshed(orchestrator, seller, make_stock, sale_payload, db_session):
    first = orchestrator.create_sale(seller.id, sale_payload([make_stock().id]))
    second = orchestrator.create_sale(
        seller.id,
        sale_payload([make_stock().id], customer={"name": "Ana B. Buyer", "phone": "1155550000"}),
    )

    assert first.customer_id == second.customer_id
    assert db_session.query(Customer).count() == 1
    assert db_session.get(Customer, first.customer_id).name == "Ana B. Buyer"


def test_warranties_use_unit_days_or_default(orchestrator, seller, make_stock, sale_payload, db_session):
    short = make_stock(warranty_days=30)
    default = make_stock(warranty_days=None)

    result = orchestrator.create_sale(seller.id, sale_payload([short.id, default.id]))

    warranties = {w.stock_item_id: w for w in db_session.query(Warranty).filter_by(sale_id=result.sale_id)}
    assert warranties[short.id].start_date == date(2026, 3, 1)
    assert warranties[short.id].end_date == date(2026, 3, 31)
    assert warranties[default.id].warranty_days == 90
    assert warranties[default.id].end_date == date(2026, 5, 30)
    assert warranties[default.id].customer_id == result.customer_id


def test_usd_sale_derives_usd_total(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    result = orchestrator.create_sale(seller.id, sale_payload([unit.id], currency="USD", fx_rate_used="1200"))

    assert result.currency == "USD"
    assert result.total_usd_cents == 100
    assert result.receivable.receivable_status == "paid"
    payment = db_session.query(Payment).filter_by(sale_id=result.sale_id).one()
    assert payment.currency.value == "USD"
    assert payment.amount_cents == 100


def test_trade_in_block_records_valued_device(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    payload = sale_payload([unit.id], trade_in={
        "enabled": True,
        "device": {"brand": "Samsung", "model": "S21", "imei": "356789012345678"},
        "trade_value_usd_cents": 25000,
        "fx_rate_used": "1150",
    })

    result = orchestrator.create_sale(seller.id, payload)

    trade_in = db_session.get(TradeIn, result.trade_in_id)
    assert trade_in.sale_id == result.sale_id
    assert trade_in.status == "valued"
    assert trade_in.device["model"] == "S21"
    assert trade_in.customer_phone == "1155550000"


def test_disabled_trade_in_is_ignored(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    result = orchestrator.create_sale(seller.id, sale_payload([unit.id], trade_in={"enabled": False}))
    assert result.trade_in_id is None
    assert db_session.query(TradeIn).count() == 0


def test_create_writes_audit_trail(orchestrator, audit_repo, seller, make_stock, sale_payload):
    units = [make_stock(), make_stock()]
    result = orchestrator.create_sale(seller.id, sale_payload([u.id for u in units]))

    assert audit_repo.actions() == [
        "sale_created",
        "stock_state_changed",
        "stock_state_changed",
        "payment_registered",
        "warranty_status_changed",
    ]
    created = audit_repo.entries[0]
    assert created["entity_id"] == result.sale_id
    assert created["actor_user_id"] == seller.id
    assert audit_repo.entries[3]["meta"]["source"] == "checkout"
    assert audit_repo.entries[4]["meta"] == {"event": "created_from_sale", "warranties_count": 2}


def test_failed_create_writes_no_audit(orchestrator, audit_repo, seller, make_stock, sale_payload):
    unit = make_stock(status=StockStatus.SOLD)
    orchestrator.create_sale(seller.id, sale_payload([unit.id]))
    # Audit entries are recorded only once every step has passed
    assert audit_repo.entries == []


# =============================================================================
# IDEMPOTENCY
# =============================================================================

def test_replayed_create_returns_identical_response_and_one_sale(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    payload = sale_payload([unit.id])

    first = orchestrator.create_sale(seller.id, payload, idempotency_key="abc-123")
    second = orchestrator.create_sale(seller.id, dict(reversed(list(payload.items()))), idempotency_key="abc-123")

    assert isinstance(second, Replayed)
    assert second.to_response() == first.to_response()
    assert db_session.query(Sale).count() == 1
    assert db_session.query(Payment).count() == 1


def test_key_reuse_with_other_payload_conflicts(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    orchestrator.create_sale(seller.id, sale_payload([unit.id]), idempotency_key="abc-123")

    result = orchestrator.create_sale(seller.id, sale_payload([make_stock().id]), idempotency_key="abc-123")

    assert result.code == ErrorCode.IDEMPOTENCY_CONFLICT
    assert result.http_status == 409
    assert db_session.query(Sale).count() == 1


def test_expected_failures_are_replayed(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    payload = sale_payload([unit.id], total_cents=1)

    first = orchestrator.create_sale(seller.id, payload, idempotency_key="mismatch")
    second = orchestrator.create_sale(seller.id, payload, idempotency_key="mismatch")

    assert first.code == ErrorCode.TOTAL_MISMATCH
    assert isinstance(second, Replayed)
    assert second.to_response() == first.to_response()


def test_overlong_idempotency_key_is_rejected(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()

    result = orchestrator.create_sale(seller.id, sale_payload([unit.id]), idempotency_key="k" * 256)

    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.details == "idempotency_key_too_long"
    assert db_session.query(Sale).count() == 0
    assert db_session.query(IdempotencyRecord).count() == 0
    assert db_session.get(StockItem, unit.id).status == StockStatus.AVAILABLE


def test_key_of_maximum_length_is_accepted(orchestrator, seller, make_stock, sale_payload):
    result = orchestrator.create_sale(seller.id, sale_payload([make_stock().id]), idempotency_key="k" * 255)
    assert isinstance(result, SaleCreated)


def test_unexpected_error_abandons_reservation(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()

    class ExplodingLocker:
        def claim(self, *args, **kwargs):
            raise RuntimeError("disk on fire")

    real_locker = orchestrator.locker
    orchestrator.locker = ExplodingLocker()
    with pytest.raises(RuntimeError):
        orchestrator.create_sale(seller.id, sale_payload([unit.id]), idempotency_key="retry-me")

    assert db_session.query(IdempotencyRecord).count() == 0
    assert db_session.query(Sale).count() == 0

    orchestrator.locker = real_locker
    result = orchestrator.create_sale(seller.id, sale_payload([unit.id]), idempotency_key="retry-me")
    assert isinstance(result, SaleCreated)


# =============================================================================
# END-TO-END SCENARIO
# =============================================================================

def test_single_unit_lifecycle_1200_ars(orchestrator, seller, admin, make_stock, sale_payload, db_session):
    unit = make_stock()

    created = orchestrator.create_sale(seller.id, sale_payload([unit.id], total_cents=120000), idempotency_key="k1")
    assert created.to_response()[1] == 201

    conflict = orchestrator.create_sale(seller.id, sale_payload([unit.id]), idempotency_key="k2")
    assert conflict.http_status == 409
    assert conflict.code == ErrorCode.STOCK_CONFLICT

    mismatch = orchestrator.create_sale(seller.id, sale_payload([make_stock().id], total_cents=100000))
    assert mismatch.http_status == 422

    cancelled = orchestrator.cancel_sale(admin.id, created.sale_id, {"reason": "customer changed mind"})
    assert isinstance(cancelled, SaleCancelled)
    assert db_session.get(StockItem, unit.id).status == StockStatus.AVAILABLE

    resold = orchestrator.create_sale(seller.id, sale_payload([unit.id]), idempotency_key="k3")
    assert isinstance(resold, SaleCreated)
    assert db_session.get(StockItem, unit.id).sale_id == resold.sale_id


# =============================================================================
# UPDATE
# =============================================================================

@pytest.fixture
def created_sale(orchestrator, seller, make_stock, sale_payload):
    unit = make_stock()
    payload = sale_payload([unit.id], deposit_cents=20000)
    result = orchestrator.create_sale(seller.id, payload)
    return result, unit


def test_update_replaces_items_and_recomputes(orchestrator, seller, make_stock, created_sale, db_session):
    created, old_unit = created_sale
    new_unit = make_stock(cost_cents=99000)

    result = orchestrator.update_sale(seller.id, created.sale_id, {
        "items": [{"stock_item_id": new_unit.id, "qty": 1, "sale_price_cents": 150000}],
        "total_cents": 150000,
    })

    assert isinstance(result, SaleUpdated)
    assert result.items_replaced is True
    assert result.total_cents == 150000
    assert result.receivable.paid_cents == 20000
    assert result.receivable.balance_due_cents == 130000

    assert db_session.get(StockItem, old_unit.id).status == StockStatus.AVAILABLE
    assert db_session.get(StockItem, new_unit.id).sale_id == created.sale_id
    items = db_session.query(SaleItem).filter_by(sale_id=created.sale_id).all()
    assert [i.stock_item_id for i in items] == [new_unit.id]
    warranties = db_session.query(Warranty).filter_by(sale_id=created.sale_id).all()
    assert [w.stock_item_id for w in warranties] == [new_unit.id]


def test_update_can_keep_a_unit_while_replacing_items(orchestrator, seller, make_stock, created_sale, db_session):
    created, unit = created_sale
    extra = make_stock()

    result = orchestrator.update_sale(seller.id, created.sale_id, {
        "items": [
            {"stock_item_id": unit.id, "qty": 1, "sale_price_cents": 120000},
            {"stock_item_id": extra.id, "qty": 1, "sale_price_cents": 50000},
        ],
    })

    assert result.total_cents == 170000
    assert db_session.get(StockItem, unit.id).status == StockStatus.SOLD
    assert db_session.get(StockItem, extra.id).status == StockStatus.SOLD


def test_update_without_items_keeps_total(orchestrator, seller, created_sale, db_session):
    created, _ = created_sale

    result = orchestrator.update_sale(seller.id, created.sale_id, {"notes": "box included"})

    assert result.total_cents == 120000
    assert result.items_replaced is False
    assert db_session.get(Sale, created.sale_id).notes == "box included"


def test_update_total_mismatch_changes_nothing(orchestrator, seller, make_stock, created_sale, db_session):
    created, old_unit = created_sale
    new_unit = make_stock()

    result = orchestrator.update_sale(seller.id, created.sale_id, {
        "items": [{"stock_item_id": new_unit.id, "qty": 1, "sale_price_cents": 150000}],
        "total_cents": 120000,
    })

    assert result.code == ErrorCode.TOTAL_MISMATCH
    assert db_session.get(StockItem, old_unit.id).status == StockStatus.SOLD
    assert db_session.get(StockItem, new_unit.id).status == StockStatus.AVAILABLE
    assert db_session.get(Sale, created.sale_id).total_cents == 120000


def test_update_customer_moves_warranties(orchestrator, seller, created_sale, db_session):
    created, _ = created_sale

    result = orchestrator.update_sale(seller.id, created.sale_id, {
        "customer": {"name": "Bruno", "phone": "1166660000"},
    })

    assert result.customer_id != created.customer_id
    warranty = db_session.query(Warranty).filter_by(sale_id=created.sale_id).one()
    assert warranty.customer_id == result.customer_id


def test_update_to_usd_requires_rate(orchestrator, seller, created_sale):
    created, _ = created_sale
    result = orchestrator.update_sale(seller.id, created.sale_id, {"currency": "USD"})
    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.details == "fx_rate_required_for_usd"


def test_switching_usd_sale_to_ars_without_rate_keeps_usd_payments_valued(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    created = orchestrator.create_sale(seller.id, sale_payload([unit.id], currency="USD", fx_rate_used="1000"))

    result = orchestrator.update_sale(seller.id, created.sale_id, {"currency": "ARS", "fx_rate_used": None})

    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.http_status == 422
    assert result.details == "fx_rate_required_for_usd_payments"
    sale = db_session.get(Sale, created.sale_id)
    assert sale.currency.value == "USD"
    assert sale.fx_rate_used == 1000


def test_clearing_rate_on_ars_sale_with_usd_payment_is_rejected(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    created = orchestrator.create_sale(seller.id, sale_payload(
        [unit.id], fx_rate_used="1000",
        payments=[{"method": "cash", "currency": "USD", "amount_cents": 100}],
    ))

    result = orchestrator.update_sale(seller.id, created.sale_id, {"fx_rate_used": None})

    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.details == "fx_rate_required_for_usd_payments"
    assert db_session.get(Sale, created.sale_id).fx_rate_used == 1000


def test_clearing_rate_on_ars_only_sale_is_allowed(orchestrator, seller, created_sale, db_session):
    created, _ = created_sale

    result = orchestrator.update_sale(seller.id, created.sale_id, {"fx_rate_used": None})

    assert isinstance(result, SaleUpdated)
    assert db_session.get(Sale, created.sale_id).fx_rate_used is None


def test_update_sale_date_moves_sold_at_and_warranty(orchestrator, seller, created_sale, db_session):
    created, unit = created_sale

    result = orchestrator.update_sale(seller.id, created.sale_id, {"sale_date": "2026-04-10T10:00:00Z"})

    assert isinstance(result, SaleUpdated)
    assert result.items_replaced is False
    assert db_session.get(StockItem, unit.id).sold_at == datetime(2026, 4, 10, 10, 0)
    warranty = db_session.query(Warranty).filter_by(sale_id=created.sale_id).one()
    assert warranty.start_date == date(2026, 4, 10)


def test_update_unknown_sale(orchestrator, seller, db_session):
    result = orchestrator.update_sale(seller.id, 9999, {"notes": "x"})
    assert result.code == ErrorCode.NOT_FOUND
    assert result.details == "sale_not_found"


def test_update_cancelled_sale_conflicts(orchestrator, seller, admin, created_sale):
    created, _ = created_sale
    orchestrator.cancel_sale(admin.id, created.sale_id, {"reason": "duplicate ticket"})

    result = orchestrator.update_sale(seller.id, created.sale_id, {"notes": "late edit"})

    assert result.code == ErrorCode.CONFLICT
    assert result.details == "sale_already_cancelled"


def test_update_writes_before_and_after(orchestrator, audit_repo, seller, created_sale):
    created, _ = created_sale
    audit_repo.entries.clear()

    orchestrator.update_sale(seller.id, created.sale_id, {"payment_method": "card", "card_brand": "visa"})

    [entry] = audit_repo.entries
    assert entry["action"] == "sale_updated"
    assert entry["before"]["payment_method"] == "cash"
    assert entry["after"]["payment_method"] == "card"


# =============================================================================
# CANCEL
# =============================================================================

def test_cancel_is_full_inverse(orchestrator, admin, created_sale, db_session):
    created, unit = created_sale

    result = orchestrator.cancel_sale(admin.id, created.sale_id, {"reason": "device defective"})

    assert result.released_stock_item_ids == [unit.id]
    stock = db_session.get(StockItem, unit.id)
    assert (stock.status, stock.sale_id, stock.sold_at) == (StockStatus.AVAILABLE, None, None)
    assert db_session.query(Warranty).filter_by(sale_id=created.sale_id).count() == 0

    sale = db_session.get(Sale, created.sale_id)
    assert sale.status == SaleStatus.CANCELLED
    assert sale.cancel_reason == "device defective"
    assert sale.cancelled_by_user_id == admin.id
    assert sale.cancelled_at is not None
    assert sale.balance_due_cents == 0
    assert sale.receivable_status == ReceivableStatus.PAID
    assert sale.paid_cents == 20000
    # Items and payments stay on record
    assert db_session.query(SaleItem).filter_by(sale_id=sale.id).count() == 1
    assert db_session.query(Payment).filter_by(sale_id=sale.id).count() == 1


def test_cancel_twice_is_a_noop(orchestrator, admin, audit_repo, created_sale, db_session):
    created, _ = created_sale
    orchestrator.cancel_sale(admin.id, created.sale_id, {"reason": "first"})
    audit_count = len(audit_repo.entries)
    cancelled_at = db_session.get(Sale, created.sale_id).cancelled_at

    result = orchestrator.cancel_sale(admin.id, created.sale_id, {"reason": "second"})

    assert result.already_cancelled is True
    assert len(audit_repo.entries) == audit_count
    sale = db_session.get(Sale, created.sale_id)
    assert sale.cancel_reason == "first"
    assert sale.cancelled_at == cancelled_at


def test_cancel_requires_reason(orchestrator, admin, created_sale):
    created, _ = created_sale
    result = orchestrator.cancel_sale(admin.id, created.sale_id, {"reason": "no"})
    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.details == "cancel_reason_required"


def test_cancel_audit_entries(orchestrator, admin, audit_repo, created_sale):
    created, unit = created_sale
    audit_repo.entries.clear()

    orchestrator.cancel_sale(admin.id, created.sale_id, {"reason": "device defective"})

    assert audit_repo.actions() == ["sale_cancelled", "stock_state_changed", "warranty_status_changed"]
    assert audit_repo.entries[1]["entity_id"] == unit.id
    assert audit_repo.entries[1]["meta"]["new_status"] == "available"
    assert audit_repo.entries[2]["meta"]["event"] == "cancelled"


# =============================================================================
# PAYMENTS / SETTLE
# =============================================================================

def test_register_payment_updates_receivable(orchestrator, seller, created_sale):
    created, _ = created_sale

    result = orchestrator.register_payment(seller.id, created.sale_id, {
        "method": "transfer", "currency": "ARS", "amount_cents": 50000,
    })

    assert isinstance(result, PaymentRegistered)
    assert result.payment_id is not None
    assert result.receivable.paid_cents == 70000
    assert result.receivable.balance_due_cents == 50000
    assert result.receivable.receivable_status == "partial"
    assert result.to_response()[1] == 201


def test_register_payment_replay_posts_once(orchestrator, seller, created_sale, db_session):
    created, _ = created_sale
    payload = {"method": "cash", "amount_cents": 10000}

    first = orchestrator.register_payment(seller.id, created.sale_id, payload, idempotency_key="pay-1")
    second = orchestrator.register_payment(seller.id, created.sale_id, payload, idempotency_key="pay-1")

    assert second.to_response() == first.to_response()
    assert db_session.query(Payment).filter_by(sale_id=created.sale_id).count() == 2


def test_register_payment_on_cancelled_sale_conflicts(orchestrator, seller, admin, created_sale):
    created, _ = created_sale
    orchestrator.cancel_sale(admin.id, created.sale_id, {"reason": "duplicate ticket"})

    result = orchestrator.register_payment(seller.id, created.sale_id, {"method": "cash", "amount_cents": 100})

    assert result.code == ErrorCode.CONFLICT
    assert result.details == "sale_cancelled"


def test_register_payment_validation(orchestrator, seller, created_sale):
    created, _ = created_sale
    result = orchestrator.register_payment(seller.id, created.sale_id, {"method": "cash", "amount_cents": -5})
    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.details == "payment_amount_must_be_gt_0"


def test_settle_pays_outstanding_balance(orchestrator, seller, audit_repo, created_sale, db_session):
    created, _ = created_sale
    audit_repo.entries.clear()

    result = orchestrator.settle_sale(seller.id, created.sale_id, {})

    assert result.to_response()[1] == 200
    assert result.receivable.balance_due_cents == 0
    assert result.receivable.receivable_status == "paid"
    payment = db_session.get(Payment, result.payment_id)
    assert payment.amount_cents == 100000
    assert payment.method.value == "transfer"
    assert payment.note == "settle_sale"
    assert audit_repo.actions() == ["payment_registered"]


def test_settle_when_already_paid_is_noop(orchestrator, seller, make_stock, sale_payload, db_session):
    created = orchestrator.create_sale(seller.id, sale_payload([make_stock().id]))

    result = orchestrator.settle_sale(seller.id, created.sale_id, {})

    assert result.payment_id is None
    assert result.receivable.receivable_status == "paid"
    assert db_session.query(Payment).filter_by(sale_id=created.sale_id).count() == 1


# =============================================================================
# READ
# =============================================================================

def test_get_sale_includes_children(orchestrator, seller, created_sale):
    created, unit = created_sale

    data = orchestrator.get_sale(created.sale_id)

    assert data["id"] == created.sale_id
    assert [i["stock_item_id"] for i in data["items"]] == [unit.id]
    assert len(data["payments"]) == 1
    assert len(data["warranties"]) == 1
    assert data["receivable_status"] == "partial"


def test_get_unknown_sale(orchestrator, db_session):
    assert orchestrator.get_sale(12345).code == ErrorCode.NOT_FOUND
