from __future__ import annotations

from ..extensions import db
from tabcore.time_utils import to_utc_z


CATALOG_TYPE_PRODUCT = "Product"
CATALOG_TYPE_SERVICE = "Service"


class CatalogItem(db.Model):
    """
    Sellable item master data.

    Only type='Product' items are stock-tracked; services never touch the stock ledger.
    Price and tax class are copied into order lines at line creation and never re-read.
    """
    __tablename__ = "catalog_items"
    __table_args__ = (
        db.UniqueConstraint("business_id", "code", name="uq_catalog_items_business_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(64), nullable=False)
    type = db.Column(db.String(16), nullable=False, default=CATALOG_TYPE_PRODUCT)
    base_price = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="Active")
    tax_class = db.Column(db.String(32), nullable=False)

    def __repr__(self) -> str:
        return f"<CatalogItem id={self.id} code={self.code!r} type={self.type}>"

    @property
    def is_product(self) -> bool:
        return self.type == CATALOG_TYPE_PRODUCT

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "code": self.code,
            "type": self.type,
            "base_price": str(self.base_price),
            "status": self.status,
            "tax_class": self.tax_class,
        }


class TaxRule(db.Model):
    """
    Tax rate per (country, tax class) over a validity window.

    Several rules may overlap; resolution picks the latest valid_from whose window contains now.
    """
    __tablename__ = "tax_rules"
    __table_args__ = (
        db.Index("ix_tax_rules_country_class_from", "country_code", "tax_class", "valid_from"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    country_code = db.Column(db.String(2), nullable=False)
    tax_class = db.Column(db.String(32), nullable=False)
    rate_percent = db.Column(db.Numeric(6, 3), nullable=False)
    valid_from = db.Column(db.DateTime(timezone=True), nullable=False)
    valid_to = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "country_code": self.country_code,
            "tax_class": self.tax_class,
            "rate_percent": str(self.rate_percent),
            "valid_from": to_utc_z(self.valid_from),
            "valid_to": to_utc_z(self.valid_to),
        }
