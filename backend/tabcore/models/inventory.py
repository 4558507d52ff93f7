from __future__ import annotations

from ..extensions import db
from tabcore.time_utils import to_utc_z


MOVEMENT_RECEIVE = "Receive"
MOVEMENT_SALE = "Sale"
MOVEMENT_REFUND_RETURN = "RefundReturn"
MOVEMENT_WASTE = "Waste"
MOVEMENT_ADJUST = "Adjust"

VALID_MOVEMENT_TYPES = (
    MOVEMENT_RECEIVE,
    MOVEMENT_SALE,
    MOVEMENT_REFUND_RETURN,
    MOVEMENT_WASTE,
    MOVEMENT_ADJUST,
)


class StockItem(db.Model):
    """
    Stock projection for one Product catalog item.

    qty_on_hand and average_unit_cost are derived from StockMovement rows and are
    only ever written together with a new movement (see stock_service.apply_movement).
    version_id makes concurrent writers detect a lost update instead of overwriting it.
    """
    __tablename__ = "stock_items"
    __table_args__ = (
        db.UniqueConstraint("catalog_item_id", name="uq_stock_items_catalog_item"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    catalog_item_id = db.Column(db.Integer, db.ForeignKey("catalog_items.id"), nullable=False)
    unit = db.Column(db.String(16), nullable=False, default="pcs")

    qty_on_hand = db.Column(db.Numeric(14, 4), nullable=False, default=0)
    average_unit_cost = db.Column(db.Numeric(14, 4), nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    catalog_item = db.relationship("CatalogItem")

    def __repr__(self) -> str:
        return f"<StockItem id={self.id} catalog_item_id={self.catalog_item_id} qty={self.qty_on_hand}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "catalog_item_id": self.catalog_item_id,
            "unit": self.unit,
            "qty_on_hand": str(self.qty_on_hand),
            "average_unit_cost": str(self.average_unit_cost),
            "version_id": self.version_id,
        }


class StockMovement(db.Model):
    """Append-only stock ledger entry. Never updated or deleted."""
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_item_at", "stock_item_id", "at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_item_id = db.Column(db.Integer, db.ForeignKey("stock_items.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    delta = db.Column(db.Numeric(14, 4), nullable=False)
    unit_cost_snapshot = db.Column(db.Numeric(14, 4), nullable=True)

    # No FK: movements outlive removed order lines
    order_line_id = db.Column(db.Integer, nullable=True, index=True)

    at = db.Column(db.DateTime(timezone=True), nullable=False)
    note = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_item_id": self.stock_item_id,
            "type": self.type,
            "delta": str(self.delta),
            "unit_cost_snapshot": str(self.unit_cost_snapshot) if self.unit_cost_snapshot is not None else None,
            "order_line_id": self.order_line_id,
            "at": to_utc_z(self.at),
            "note": self.note,
        }
