import json
from datetime import datetime, timedelta

from resale_pos.models import IdempotencyRecord, Sale, StockItem, User
from resale_pos.models.enums import StockStatus
from resale_pos.services import maintenance_service
from resale_pos.services.reconcile_service import plan_reconciliation, reconcile_stock, summarize_consistency


def _drift(db_session, unit_id, status, sale_id=None):
    unit = db_session.get(StockItem, unit_id)
    unit.status = status
    unit.sale_id = sale_id
    db_session.commit()


# =============================================================================
# Service
# =============================================================================

def test_consistent_data_plans_nothing(orchestrator, seller, make_stock, sale_payload):
    orchestrator.create_sale(seller.id, sale_payload([make_stock().id]))

    changes, warnings = plan_reconciliation()

    assert changes == []
    assert warnings == []


def test_unit_released_by_hand_is_sold_again(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    sale_id = orchestrator.create_sale(seller.id, sale_payload([unit.id])).sale_id
    _drift(db_session, unit.id, StockStatus.AVAILABLE)

    report = reconcile_stock(apply=True)

    assert report.to_dict()["planned_changes"] == 1
    assert report.changes[0]["reason"] == "linked_to_completed_sale_item"
    assert len(report.before["completed_item_stock_mismatches"]) == 1
    assert report.after["completed_item_stock_mismatches"] == []

    unit = db_session.get(StockItem, unit.id)
    assert unit.status == StockStatus.SOLD
    assert unit.sale_id == sale_id
    assert unit.sold_at == db_session.get(Sale, sale_id).sale_date


def test_unit_of_cancelled_sale_becomes_available(orchestrator, seller, admin, make_stock, sale_payload, db_session):
    unit = make_stock()
    sale_id = orchestrator.create_sale(seller.id, sale_payload([unit.id])).sale_id
    orchestrator.cancel_sale(admin.id, sale_id, {"reason": "returned"})
    _drift(db_session, unit.id, StockStatus.SOLD, sale_id)

    report = reconcile_stock(apply=True)

    assert [c["reason"] for c in report.changes] == ["only_linked_to_cancelled_sales"]
    unit = db_session.get(StockItem, unit.id)
    assert (unit.status, unit.sale_id, unit.sold_at) == (StockStatus.AVAILABLE, None, None)


def test_latest_completed_sale_wins(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    older = orchestrator.create_sale(seller.id, sale_payload([unit.id], sale_date="2026-02-01T10:00:00Z")).sale_id
    # Simulate a second sale recorded while the unit was wrongly back in stock
    _drift(db_session, unit.id, StockStatus.AVAILABLE)
    newer = orchestrator.create_sale(seller.id, sale_payload([unit.id], sale_date="2026-03-01T10:00:00Z")).sale_id
    _drift(db_session, unit.id, StockStatus.SOLD, older)

    changes, _ = plan_reconciliation()

    assert len(changes) == 1
    assert changes[0]["from_sale_id"] == older
    assert changes[0]["to_sale_id"] == newer
    assert changes[0]["sold_at"] == "2026-03-01T10:00:00Z"


def test_orphan_sold_units_are_only_warned(make_stock, db_session):
    orphan = make_stock(imei="356000000000001", status=StockStatus.SOLD)

    report = reconcile_stock(apply=True)

    assert report.changes == []
    [warning] = report.warnings
    assert warning["type"] == "sold_stock_without_sale_reference_or_sale_item"
    assert warning["count"] == 1
    assert warning["samples"][0]["id"] == orphan.id
    assert db_session.get(StockItem, orphan.id).status == StockStatus.SOLD


def test_dry_run_writes_nothing(orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    orchestrator.create_sale(seller.id, sale_payload([unit.id]))
    _drift(db_session, unit.id, StockStatus.AVAILABLE)

    report = reconcile_stock(apply=False)

    assert report.to_dict()["mode"] == "dry-run"
    assert report.to_dict()["planned_changes"] == 1
    assert report.after == report.before
    db_session.expire_all()
    assert db_session.get(StockItem, unit.id).status == StockStatus.AVAILABLE


def test_summary_counts(orchestrator, seller, make_stock, sale_payload):
    orchestrator.create_sale(seller.id, sale_payload([make_stock().id, make_stock().id]))

    summary = summarize_consistency()

    assert summary["completed_sales_count"] == 1
    assert summary["completed_sale_items_qty"] == 2
    assert summary["sold_stock_count"] == 2
    assert summary["sold_without_sale_id"] == 0


# =============================================================================
# Maintenance
# =============================================================================

def _idempotency_record(db_session, user, key, expires_at):
    db_session.add(IdempotencyRecord(
        actor_user_id=user.id,
        route="POST /api/sales",
        key=key,
        request_hash="0" * 64,
        expires_at=expires_at,
    ))
    db_session.commit()


def test_cleanup_removes_only_expired_records(seller, db_session):
    now = datetime(2026, 3, 10, 12, 0)
    _idempotency_record(db_session, seller, "old", now - timedelta(hours=1))
    _idempotency_record(db_session, seller, "fresh", now + timedelta(hours=1))

    assert maintenance_service.cleanup_idempotency_records(now=now) == 1
    assert [r.key for r in db_session.query(IdempotencyRecord).all()] == ["fresh"]


# =============================================================================
# CLI
# =============================================================================

def test_cli_reconcile_prints_plan(app, orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    orchestrator.create_sale(seller.id, sale_payload([unit.id]))
    _drift(db_session, unit.id, StockStatus.AVAILABLE)

    result = app.test_cli_runner().invoke(args=["stock", "reconcile"])

    assert result.exit_code == 0, result.output
    report = json.loads(result.output)
    assert report["mode"] == "dry-run"
    assert report["planned_changes"] == 1


def test_cli_reconcile_apply(app, orchestrator, seller, make_stock, sale_payload, db_session):
    unit = make_stock()
    orchestrator.create_sale(seller.id, sale_payload([unit.id]))
    _drift(db_session, unit.id, StockStatus.AVAILABLE)

    result = app.test_cli_runner().invoke(args=["stock", "reconcile", "--apply"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["mode"] == "apply"
    db_session.expire_all()
    assert db_session.get(StockItem, unit.id).status == StockStatus.SOLD


def test_cli_purge_idempotency_keys(app, seller, db_session):
    _idempotency_record(db_session, seller, "ancient", datetime(2020, 1, 1))

    result = app.test_cli_runner().invoke(args=["maintenance", "purge-idempotency-keys"])

    assert result.exit_code == 0, result.output
    assert "Deleted 1 expired idempotency records." in result.output


def test_cli_users_create(app, db_session):
    result = app.test_cli_runner().invoke(
        args=["users", "create", "--name", "Olga Owner", "--email", "olga@shop.local", "--role", "owner"]
    )

    assert result.exit_code == 0, result.output
    assert "PASS Created user" in result.output
    user = db_session.query(User).filter_by(email="olga@shop.local").one()
    assert user.role.value == "owner"


def test_cli_stock_add(app, db_session):
    result = app.test_cli_runner().invoke(
        args=["stock", "add", "--brand", "Apple", "--model", "iPhone 14", "--cost-cents", "90000"]
    )

    assert result.exit_code == 0, result.output
    unit = db_session.query(StockItem).filter_by(model="iPhone 14").one()
    assert unit.status == StockStatus.AVAILABLE
    assert unit.purchase_cost_cents == 90000
