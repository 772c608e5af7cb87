from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import StockStatus, enum_column


class StockItem(db.Model):
    """
    One serialized unit of stock (a phone identified by IMEI).

    INVARIANT: status == SOLD  <=>  sale_id points to a non-cancelled sale.
    Only the inventory locker moves units in and out of SOLD.
    """
    __tablename__ = "stock_items"
    __table_args__ = (
        db.Index("ix_stock_items_status_imei", "status", "imei"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    brand = db.Column(db.String(64), nullable=False)
    model = db.Column(db.String(128), nullable=False)
    imei = db.Column(db.String(32), nullable=True, index=True)

    status = db.Column(
        enum_column(StockStatus, "ck_stock_items_status"),
        nullable=False,
        default=StockStatus.AVAILABLE,
        index=True,
    )

    # Sale linkage (set on claim, cleared on release)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id", ondelete="SET NULL"), nullable=True, index=True)
    sold_at = db.Column(db.DateTime(timezone=True), nullable=True)

    purchase_cost_cents = db.Column(db.Integer, nullable=True)
    warranty_days = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<StockItem id={self.id} status={self.status.value if self.status else None}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "brand": self.brand,
            "model": self.model,
            "imei": self.imei,
            "status": self.status.value if self.status else None,
            "sale_id": self.sale_id,
            "sold_at": to_utc_z(self.sold_at),
            "purchase_cost_cents": self.purchase_cost_cents,
            "warranty_days": self.warranty_days,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }
