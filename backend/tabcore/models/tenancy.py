from __future__ import annotations

from ..extensions import db
from tabcore.time_utils import to_utc_z


ROLE_OWNER = "Owner"
ROLE_MANAGER = "Manager"
ROLE_STAFF = "Staff"


class Business(db.Model):
    """
    Tenant root. Every order, catalog item, discount and gift card is scoped by business_id.

    country_code drives tax rule resolution for order lines.
    """
    __tablename__ = "businesses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    country_code = db.Column(db.String(2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="Active")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Business id={self.id} name={self.name!r} country={self.country_code}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "country_code": self.country_code,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class Employee(db.Model):
    """Staff member. role is one of Owner, Manager, Staff."""
    __tablename__ = "employees"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(16), nullable=False, default=ROLE_STAFF)
    status = db.Column(db.String(16), nullable=False, default="Active")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "role": self.role,
            "status": self.status,
        }


class Reservation(db.Model):
    __tablename__ = "reservations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="Booked")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "starts_at": to_utc_z(self.starts_at),
            "status": self.status,
        }
