# Overview: Service-layer operations for stock/sale reconciliation; repairs unit status drift from sale history.

"""
Stock reconciliation

WHY: Units sold or released by hand (imports, manual SQL, pre-engine data)
can drift from what the sales say. This pass derives the expected state of
every unit from its sale items and reports (or applies) the difference.

RULES:
- Linked to at least one COMPLETED sale: SOLD on the most recent such sale
- Linked only to CANCELLED sales: AVAILABLE with no sale link
- SOLD with no sale link and no sale item: reported as a warning only
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..extensions import db
from ..models import Sale, SaleItem, StockItem
from ..models.enums import SaleStatus, StockStatus
from ..time_utils import to_utc_z

logger = logging.getLogger(__name__)

WARNING_SAMPLE_SIZE = 20


@dataclass
class ReconcileReport:
    apply: bool
    changes: list[dict] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)
    before: dict = field(default_factory=dict)
    after: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "mode": "apply" if self.apply else "dry-run",
            "planned_changes": len(self.changes),
            "changes": self.changes,
            "warnings": self.warnings,
            "before": self.before,
            "after": self.after,
        }


def summarize_consistency() -> dict:
    completed_items = (
        db.session.query(SaleItem, StockItem)
        .join(Sale, Sale.id == SaleItem.sale_id)
        .outerjoin(StockItem, StockItem.id == SaleItem.stock_item_id)
        .filter(Sale.status == SaleStatus.COMPLETED)
        .all()
    )

    mismatches = []
    for item, stock in completed_items:
        if stock is None:
            mismatches.append({"type": "missing_stock_item", "stock_item_id": item.stock_item_id, "sale_id": item.sale_id})
        elif stock.status != StockStatus.SOLD:
            mismatches.append({
                "type": "completed_item_not_sold",
                "stock_item_id": item.stock_item_id,
                "sale_id": item.sale_id,
                "stock_status": stock.status.value,
                "stock_sale_id": stock.sale_id,
            })

    sold_without_sale = db.session.query(StockItem).filter(
        StockItem.status == StockStatus.SOLD,
        StockItem.sale_id.is_(None),
    ).count()

    return {
        "completed_sales_count": db.session.query(Sale).filter(Sale.status == SaleStatus.COMPLETED).count(),
        "completed_sale_items_qty": sum(item.quantity for item, _ in completed_items),
        "sold_stock_count": db.session.query(StockItem).filter(StockItem.status == StockStatus.SOLD).count(),
        "completed_item_stock_mismatches": mismatches,
        "sold_without_sale_id": sold_without_sale,
    }


def plan_reconciliation() -> tuple[list[dict], list[dict]]:
    links_by_stock: dict[int, list[Sale]] = {}
    rows = (
        db.session.query(SaleItem.stock_item_id, Sale)
        .join(Sale, Sale.id == SaleItem.sale_id)
        .all()
    )
    for stock_item_id, sale in rows:
        links_by_stock.setdefault(stock_item_id, []).append(sale)

    changes = []
    warnings = []
    for stock_item_id, sales in links_by_stock.items():
        current = db.session.get(StockItem, stock_item_id)
        if current is None:
            warnings.append({"type": "stock_missing_for_sale_item", "stock_item_id": stock_item_id})
            continue

        completed = [sale for sale in sales if sale.status == SaleStatus.COMPLETED]
        if completed:
            winner = max(completed, key=lambda sale: (sale.sale_date, sale.created_at, sale.id))
            if current.status != StockStatus.SOLD or current.sale_id != winner.id:
                changes.append({
                    "stock_item_id": stock_item_id,
                    "from_status": current.status.value,
                    "from_sale_id": current.sale_id,
                    "to_status": StockStatus.SOLD.value,
                    "to_sale_id": winner.id,
                    "sold_at": to_utc_z(winner.sale_date),
                    "reason": "linked_to_completed_sale_item",
                })
            continue

        if current.status == StockStatus.SOLD or current.sale_id is not None:
            changes.append({
                "stock_item_id": stock_item_id,
                "from_status": current.status.value,
                "from_sale_id": current.sale_id,
                "to_status": StockStatus.AVAILABLE.value,
                "to_sale_id": None,
                "sold_at": None,
                "reason": "only_linked_to_cancelled_sales",
            })

    orphans = (
        db.session.query(StockItem)
        .filter(StockItem.status == StockStatus.SOLD, StockItem.sale_id.is_(None))
        .order_by(StockItem.id.asc())
        .all()
    )
    orphans = [unit for unit in orphans if unit.id not in links_by_stock]
    if orphans:
        warnings.append({
            "type": "sold_stock_without_sale_reference_or_sale_item",
            "count": len(orphans),
            "samples": [
                {"id": unit.id, "imei": unit.imei, "model": unit.model}
                for unit in orphans[:WARNING_SAMPLE_SIZE]
            ],
        })

    return changes, warnings


def reconcile_stock(*, apply: bool = False) -> ReconcileReport:
    """Plan the repairs and, with apply=True, write them in one transaction."""
    report = ReconcileReport(apply=apply, before=summarize_consistency())
    report.changes, report.warnings = plan_reconciliation()

    if apply and report.changes:
        for change in report.changes:
            unit = db.session.get(StockItem, change["stock_item_id"])
            unit.status = StockStatus(change["to_status"])
            unit.sale_id = change["to_sale_id"]
            if unit.status == StockStatus.SOLD:
                sale = db.session.get(Sale, change["to_sale_id"])
                unit.sold_at = sale.sale_date
            else:
                unit.sold_at = None
        db.session.commit()
        logger.info("Stock reconciliation applied %d change(s)", len(report.changes))

    report.after = summarize_consistency() if apply else report.before
    return report
