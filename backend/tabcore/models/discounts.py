from __future__ import annotations

from ..extensions import db
from tabcore.time_utils import to_utc_z


DISCOUNT_TYPE_PERCENT = "Percent"
DISCOUNT_TYPE_AMOUNT = "Amount"
VALID_DISCOUNT_TYPES = (DISCOUNT_TYPE_PERCENT, DISCOUNT_TYPE_AMOUNT)

DISCOUNT_SCOPE_ORDER = "Order"
DISCOUNT_SCOPE_LINE = "Line"
VALID_DISCOUNT_SCOPES = (DISCOUNT_SCOPE_ORDER, DISCOUNT_SCOPE_LINE)


class Discount(db.Model):
    """
    Order- or line-scoped discount with a validity window.

    Discounts are never applied by reference: orders and lines carry a JSON snapshot
    taken when the discount was attached, so editing or deactivating a discount
    does not change existing tabs.

    CODE UNIQUENESS: code is unique per business, case-insensitive
    (see uq_discounts_business_code_ci below).
    """
    __tablename__ = "discounts"
    __table_args__ = (
        db.Index("ix_discounts_business_scope_status", "business_id", "scope", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False)
    type = db.Column(db.String(16), nullable=False)    # Percent | Amount
    scope = db.Column(db.String(16), nullable=False)   # Order | Line
    value = db.Column(db.Numeric(12, 2), nullable=False)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="Active")

    eligibilities = db.relationship(
        "DiscountEligibility",
        backref="discount",
        lazy=True,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Discount id={self.id} code={self.code!r} {self.type}/{self.scope} value={self.value}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "code": self.code,
            "type": self.type,
            "scope": self.scope,
            "value": str(self.value),
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "status": self.status,
            "eligible_catalog_item_ids": sorted(e.catalog_item_id for e in self.eligibilities),
        }


db.Index(
    "uq_discounts_business_code_ci",
    Discount.business_id,
    db.func.lower(Discount.code),
    unique=True,
)


class DiscountEligibility(db.Model):
    """Which catalog items a Line-scope discount may apply to. Order-scope discounts have none."""
    __tablename__ = "discount_eligibilities"

    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), primary_key=True)
    catalog_item_id = db.Column(db.Integer, db.ForeignKey("catalog_items.id"), primary_key=True, index=True)

    def to_dict(self) -> dict:
        return {"discount_id": self.discount_id, "catalog_item_id": self.catalog_item_id}
