# Overview: Service-layer operations for serialized stock claims; row-locked sell/release of units.

"""
Inventory Locker

INVARIANTS:
- A unit is claimable only while AVAILABLE.
- Every unit is locked (SELECT ... FOR UPDATE) before its status is read.
- Units are locked in request order; callers lock the sale row first.
- A claim is all-or-nothing: nothing is mutated until every unit passed.
- release() is the exact inverse of claim(): status, sale_id and sold_at
  return to their pre-sale values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from ..extensions import db
from ..models import StockItem
from ..models.enums import StockStatus
from ..results import ErrorCode, Failure
from .concurrency import lock_for_update

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitSnapshot:
    """Cost and warranty terms of a unit at the moment it was claimed."""
    stock_item_id: int
    unit_cost_cents: int | None
    warranty_days: int | None


@dataclass(frozen=True)
class Claimed:
    snapshots: list[UnitSnapshot] = field(default_factory=list)


@dataclass(frozen=True)
class NotFound:
    stock_item_ids: list[int]

    def to_failure(self) -> Failure:
        return Failure(
            ErrorCode.NOT_FOUND,
            "Stock item not found",
            {"reason": "stock_item_not_found", "stock_item_ids": list(self.stock_item_ids)},
        )


@dataclass(frozen=True)
class Unavailable:
    stock_item_id: int
    current_status: str

    def to_failure(self) -> Failure:
        return Failure(
            ErrorCode.STOCK_CONFLICT,
            "Stock item is not available",
            {
                "reason": "stock_item_not_available",
                "stock_item_id": self.stock_item_id,
                "current_status": self.current_status,
            },
        )


class InventoryLocker:
    def _lock_units(self, stock_item_ids: list[int]) -> dict[int, StockItem | None]:
        units = {}
        for stock_item_id in stock_item_ids:
            units[stock_item_id] = lock_for_update(
                db.session.query(StockItem).filter_by(id=stock_item_id)
            ).first()
        return units

    def claim(self, sale, stock_item_ids: list[int], sold_at: datetime):
        """
        Mark every unit SOLD on the sale.

        Returns Claimed, NotFound or Unavailable. On a failure nothing has
        been mutated; the caller's transaction decides what to roll back.
        """
        units = self._lock_units(stock_item_ids)

        missing = [stock_item_id for stock_item_id, unit in units.items() if unit is None]
        if missing:
            return NotFound(missing)

        for stock_item_id in stock_item_ids:
            unit = units[stock_item_id]
            if unit.status != StockStatus.AVAILABLE:
                logger.info(
                    "Stock item %s not claimable for sale %s (status=%s)",
                    stock_item_id, sale.id, unit.status.value,
                )
                return Unavailable(stock_item_id, unit.status.value)

        snapshots = []
        for stock_item_id in stock_item_ids:
            unit = units[stock_item_id]
            unit.status = StockStatus.SOLD
            unit.sale_id = sale.id
            unit.sold_at = sold_at
            snapshots.append(UnitSnapshot(
                stock_item_id=unit.id,
                unit_cost_cents=unit.purchase_cost_cents,
                warranty_days=unit.warranty_days,
            ))

        db.session.flush()
        return Claimed(snapshots)

    def restamp(self, sale, sold_at: datetime) -> list[int]:
        """Move sold_at of the units still linked to the sale (sale date edits)."""
        units = lock_for_update(
            db.session.query(StockItem).filter_by(sale_id=sale.id).order_by(StockItem.id.asc())
        ).all()
        for unit in units:
            unit.sold_at = sold_at
        db.session.flush()
        return [unit.id for unit in units]

    def release(self, stock_item_ids: list[int], *, sale_id: int | None = None) -> list[int]:
        """
        Return units to AVAILABLE and clear their sale link.

        With sale_id, only units still linked to that sale are touched, so a
        unit that was already re-sold elsewhere is left alone. Returns the ids
        actually released.
        """
        released = []
        for stock_item_id, unit in self._lock_units(stock_item_ids).items():
            if unit is None:
                continue
            if sale_id is not None and unit.sale_id != sale_id:
                continue
            unit.status = StockStatus.AVAILABLE
            unit.sale_id = None
            unit.sold_at = None
            released.append(stock_item_id)

        db.session.flush()
        return released
