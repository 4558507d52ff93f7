from __future__ import annotations

from ..extensions import db
from tabcore.time_utils import to_utc_z


ORDER_STATUS_OPEN = "Open"
ORDER_STATUS_CLOSED = "Closed"
ORDER_STATUS_CANCELLED = "Cancelled"
VALID_ORDER_STATUSES = (ORDER_STATUS_OPEN, ORDER_STATUS_CLOSED, ORDER_STATUS_CANCELLED)


class Order(db.Model):
    """
    An open tab.

    INVARIANTS:
    - status is exactly one of Open, Closed, Cancelled
    - closed_at is set iff status != Open (cleared on reopen)
    - lines can only change while Open
    - never deleted while it still has lines
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_business_status_created", "business_id", "status", "created_at"),
        db.Index("ix_orders_business_employee", "business_id", "employee_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False)
    reservation_id = db.Column(db.Integer, db.ForeignKey("reservations.id"), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_OPEN)
    table_or_area = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    tip_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    # Order-level discount, frozen at assignment time
    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), nullable=True)
    discount_snapshot = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} business_id={self.business_id} status={self.status}>"

    @property
    def is_open(self) -> bool:
        return self.status == ORDER_STATUS_OPEN

    def to_dict(self, lines: list | None = None) -> dict:
        data = {
            "id": self.id,
            "business_id": self.business_id,
            "employee_id": self.employee_id,
            "reservation_id": self.reservation_id,
            "status": self.status,
            "table_or_area": self.table_or_area,
            "created_at": to_utc_z(self.created_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "tip_amount": str(self.tip_amount),
            "discount_id": self.discount_id,
            "discount_snapshot": self.discount_snapshot,
            "version_id": self.version_id,
        }
        if lines is not None:
            data["lines"] = [line.to_dict() for line in lines]
        return data


class OrderLine(db.Model):
    """
    One catalog item on an order.

    SNAPSHOTS: item name, unit price, tax class/rate, catalog type and discount JSON
    are captured when the line is created (discount also on explicit update) and are
    the contractual basis for totals. They are never recomputed from live catalog,
    discount or tax data.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        db.Index("ix_order_lines_business_order", "business_id", "order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False)
    catalog_item_id = db.Column(db.Integer, db.ForeignKey("catalog_items.id"), nullable=False)

    quantity = db.Column(db.Numeric(14, 4), nullable=False)

    item_name_snapshot = db.Column(db.String(255), nullable=False)
    unit_price_snapshot = db.Column(db.Numeric(12, 2), nullable=False)
    tax_class_snapshot = db.Column(db.String(32), nullable=False)
    tax_rate_snapshot_pct = db.Column(db.Numeric(6, 3), nullable=False, default=0)
    catalog_type_snapshot = db.Column(db.String(16), nullable=False)

    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), nullable=True)
    discount_snapshot = db.Column(db.Text, nullable=True)

    performed_by_employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=True)
    performed_at = db.Column(db.DateTime(timezone=True), nullable=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_product(self) -> bool:
        return self.catalog_type_snapshot == "Product"

    def clone_snapshot(self) -> dict:
        """Snapshot columns to carry onto a split-off line."""
        return {
            "business_id": self.business_id,
            "catalog_item_id": self.catalog_item_id,
            "item_name_snapshot": self.item_name_snapshot,
            "unit_price_snapshot": self.unit_price_snapshot,
            "tax_class_snapshot": self.tax_class_snapshot,
            "tax_rate_snapshot_pct": self.tax_rate_snapshot_pct,
            "catalog_type_snapshot": self.catalog_type_snapshot,
            "discount_id": self.discount_id,
            "discount_snapshot": self.discount_snapshot,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "business_id": self.business_id,
            "catalog_item_id": self.catalog_item_id,
            "quantity": str(self.quantity),
            "item_name_snapshot": self.item_name_snapshot,
            "unit_price_snapshot": str(self.unit_price_snapshot),
            "tax_class_snapshot": self.tax_class_snapshot,
            "tax_rate_snapshot_pct": str(self.tax_rate_snapshot_pct),
            "catalog_type_snapshot": self.catalog_type_snapshot,
            "discount_id": self.discount_id,
            "discount_snapshot": self.discount_snapshot,
            "performed_by_employee_id": self.performed_by_employee_id,
            "performed_at": to_utc_z(self.performed_at),
            "version_id": self.version_id,
        }
