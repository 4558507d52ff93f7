from __future__ import annotations

from ..extensions import db
from tabcore.time_utils import to_utc_z


PAYMENT_STATUS_PENDING = "Pending"
PAYMENT_STATUS_SUCCESS = "Success"
PAYMENT_STATUS_CANCELLED = "Cancelled"
PAYMENT_STATUS_REFUNDED = "Refunded"

METHOD_GIFT_CARD = "GiftCard"
METHOD_STRIPE = "Stripe"
METHOD_GIFT_CARD_STRIPE = "GiftCard+Stripe"

GIFT_CARD_STATUS_ACTIVE = "Active"
GIFT_CARD_STATUS_INACTIVE = "Inactive"


class Payment(db.Model):
    """
    Settlement attempt for an order.

    WHY is_open: at most one in-flight payment per order. Enforced by the partial
    unique index uq_payments_order_open; is_open drops to False once the payment
    leaves Pending.

    AMOUNTS (minor units):
    - amount_cents + tip_cents = total charged to the customer
    - gift_card_planned_cents: allocation decided at creation
    - gift_card_charged_cents: what was actually redeemed (refunds use this)
    - gateway_amount_cents: portion sent to the external gateway

    refund_requested_at is the refund claim: set and committed before the gateway
    is asked for money back, so only one caller ever reaches the gateway.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index(
            "uq_payments_order_open",
            "order_id",
            unique=True,
            sqlite_where=db.text("is_open = 1"),
            postgresql_where=db.text("is_open"),
        ),
        db.Index("ix_payments_business_created", "business_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=True)

    amount_cents = db.Column(db.BigInteger, nullable=False)
    tip_cents = db.Column(db.BigInteger, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    method = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)
    is_open = db.Column(db.Boolean, nullable=False, default=True)

    gift_card_id = db.Column(db.Integer, db.ForeignKey("gift_cards.id"), nullable=True)
    gift_card_planned_cents = db.Column(db.BigInteger, nullable=False, default=0)
    gift_card_charged_cents = db.Column(db.BigInteger, nullable=False, default=0)
    gateway_amount_cents = db.Column(db.BigInteger, nullable=False, default=0)

    external_session_id = db.Column(db.String(255), nullable=True, unique=True)
    checkout_url = db.Column(db.String(1024), nullable=True)

    inventory_applied = db.Column(db.Boolean, nullable=False, default=False)
    inventory_applied_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Payment id={self.id} order_id={self.order_id} status={self.status} method={self.method}>"

    @property
    def total_cents(self) -> int:
        return self.amount_cents + self.tip_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "order_id": self.order_id,
            "employee_id": self.employee_id,
            "amount_cents": self.amount_cents,
            "tip_cents": self.tip_cents,
            "total_cents": self.total_cents,
            "currency": self.currency,
            "method": self.method,
            "status": self.status,
            "is_open": self.is_open,
            "gift_card_id": self.gift_card_id,
            "gift_card_planned_cents": self.gift_card_planned_cents,
            "gift_card_charged_cents": self.gift_card_charged_cents,
            "gateway_amount_cents": self.gateway_amount_cents,
            "external_session_id": self.external_session_id,
            "checkout_url": self.checkout_url,
            "inventory_applied": self.inventory_applied,
            "inventory_applied_at": to_utc_z(self.inventory_applied_at) if self.inventory_applied_at else None,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "refund_requested_at": to_utc_z(self.refund_requested_at) if self.refund_requested_at else None,
            "refunded_at": to_utc_z(self.refunded_at) if self.refunded_at else None,
            "version_id": self.version_id,
        }


class GiftCard(db.Model):
    """Stored-value card. balance is in minor units and guarded by version_id."""
    __tablename__ = "gift_cards"
    __table_args__ = (
        db.UniqueConstraint("business_id", "code", name="uq_gift_cards_business_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False)

    balance = db.Column(db.BigInteger, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=GIFT_CARD_STATUS_ACTIVE)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<GiftCard id={self.id} code={self.code!r} balance={self.balance}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "code": self.code,
            "balance": self.balance,
            "status": self.status,
            "expires_at": to_utc_z(self.expires_at) if self.expires_at else None,
            "issued_at": to_utc_z(self.issued_at),
            "version_id": self.version_id,
        }
