# Overview: Payment orchestration; order totals, gift card / gateway allocation and the settlement state machine.

"""
Payment Orchestrator

STATE MACHINE (Payment.status):
    Pending -> Success     confirm_success (or immediately when a gift card covers everything)
    Pending -> Cancelled   cancel_pending (checkout expired)
    Success -> Refunded    refund_full

INVARIANTS:
- At most one is_open payment per order (partial unique index uq_payments_order_open).
- For a settled payment: gift_card_charged_cents + gateway_amount_cents
  == amount_cents + tip_cents.
- Settlement never moves stock: line add/update/remove already did. The
  inventory_applied flag is set exactly once.
- A refund is claimed (refund_requested_at, committed) before the gateway is
  called, so concurrent refunds reach the gateway at most once.
- Webhooks are at-least-once: confirm_success and cancel_pending check status
  before any side effect, so redelivery is a no-op.

TOTALS:
    per line:  unit_price * qty -> line discount -> clamp >= 0 -> round 2 dp
    order:     sum(lines) -> order discount -> clamp >= 0 -> round 2 dp -> cents
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import GatewayError, InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import GiftCard, Order, OrderLine, Payment
from ..models.orders import ORDER_STATUS_CANCELLED, ORDER_STATUS_CLOSED, ORDER_STATUS_OPEN
from ..models.payments import (
    METHOD_GIFT_CARD,
    METHOD_GIFT_CARD_STRIPE,
    METHOD_STRIPE,
    PAYMENT_STATUS_CANCELLED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_SUCCESS,
)
from ..money import ZERO, apply_discount, round_money, to_cents
from ..snapshots import parse_discount_snapshot
from tabcore.time_utils import utcnow
from . import gift_card_service
from .concurrency import run_with_retry
from .gateway import get_gateway
from .order_service import return_order_stock


# =============================================================================
# TOTALS
# =============================================================================

def _discounted(amount: Decimal, raw_snapshot: str | None) -> Decimal:
    snapshot = parse_discount_snapshot(raw_snapshot)
    if snapshot is None:
        return amount
    return apply_discount(amount, snapshot.type, snapshot.value)


def _order_amount_cents(order: Order) -> int:
    lines = db.session.query(OrderLine).filter_by(order_id=order.id).order_by(OrderLine.id).all()

    subtotal = ZERO
    for line in lines:
        line_total = Decimal(line.unit_price_snapshot) * Decimal(line.quantity)
        subtotal += round_money(_discounted(line_total, line.discount_snapshot))

    return to_cents(_discounted(subtotal, order.discount_snapshot))


def calculate_order_total(order_id: int) -> int:
    """Order amount in cents from stored snapshots only (tip excluded)."""
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return _order_amount_cents(order)


# =============================================================================
# QUERIES
# =============================================================================

def get_payment(business_id: int, payment_id: int) -> Payment:
    payment = db.session.query(Payment).filter_by(id=payment_id, business_id=business_id).first()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


def list_payments_for_order(business_id: int, order_id: int) -> list[Payment]:
    return (
        db.session.query(Payment)
        .filter_by(business_id=business_id, order_id=order_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .all()
    )


def list_payments_for_business(business_id: int, status: str | None = None) -> list[Payment]:
    q = db.session.query(Payment).filter(Payment.business_id == business_id)
    if status:
        q = q.filter(Payment.status == status)
    return q.order_by(Payment.created_at.desc(), Payment.id.desc()).all()


# =============================================================================
# SETTLEMENT
# =============================================================================

def _settle(payment: Payment, order: Order) -> None:
    """
    Pending -> Success inside the caller's transaction.

    The planned gift card amount is redeemed only while nothing has been charged
    yet, so a replayed confirmation can never charge the card twice.
    """
    now = utcnow()

    if payment.gift_card_id is not None and payment.gift_card_planned_cents > 0 and payment.gift_card_charged_cents == 0:
        card = db.session.get(GiftCard, payment.gift_card_id)
        if card is None:
            raise NotFoundError("Gift card not found")
        charged, _ = gift_card_service.redeem_locked(card, payment.gift_card_planned_cents, payment.business_id)
        if charged != payment.gift_card_planned_cents:
            raise InvalidStateError(
                "Gift card balance no longer covers the planned amount",
                details={
                    "gift_card_id": card.id,
                    "planned_cents": payment.gift_card_planned_cents,
                    "available_cents": charged,
                },
            )
        payment.gift_card_charged_cents = charged

    payment.status = PAYMENT_STATUS_SUCCESS
    payment.is_open = False
    payment.completed_at = now

    if not payment.inventory_applied:
        payment.inventory_applied = True
        payment.inventory_applied_at = now

    order.status = ORDER_STATUS_CLOSED
    order.closed_at = now


def _choose_method(gift_card_cents: int, gateway_cents: int) -> str:
    if gift_card_cents == 0:
        return METHOD_STRIPE
    if gateway_cents == 0:
        return METHOD_GIFT_CARD
    return METHOD_GIFT_CARD_STRIPE


def create_payment(
    order_id: int,
    business_id: int,
    *,
    employee_id: int | None = None,
    currency: str | None = None,
    gift_card_code: str | None = None,
    gift_card_amount_cents: int | None = None,
    tip_cents: int | None = None,
    base_url: str | None = None,
) -> Payment:
    """
    Start settling an Open order.

    amount_cents comes from the order's snapshots; tip_cents defaults to the
    order's tip. A gift card covers min(requested-or-full, balance, total) and the
    rest goes to the gateway. Full gift card coverage settles immediately;
    otherwise a checkout session is opened and the payment stays Pending.

    Raises:
        NotFoundError: order or gift card not in this business
        InvalidStateError: order not Open, card blocked/expired, payment already pending
        ValidationError: non-positive amount, negative tip, non-positive gift card amount
        GatewayError: checkout session could not be created
    """
    if tip_cents is not None and (isinstance(tip_cents, bool) or not isinstance(tip_cents, int)):
        raise ValidationError("tip_cents must be an integer number of cents")
    if tip_cents is not None and tip_cents < 0:
        raise ValidationError("tip_cents cannot be negative")
    if gift_card_amount_cents is not None:
        gift_card_amount_cents = gift_card_service.require_positive_cents(
            gift_card_amount_cents, "gift_card_amount_cents"
        )

    currency = (currency or current_app.config.get("DEFAULT_CURRENCY", "EUR")).upper()
    base_url = (base_url or current_app.config.get("PUBLIC_BASE_URL", "")).rstrip("/")

    def _op():
        order = db.session.query(Order).filter_by(id=order_id, business_id=business_id).first()
        if order is None:
            raise NotFoundError("Order not found")
        if order.status != ORDER_STATUS_OPEN:
            raise InvalidStateError("Operation allowed only for Open orders", details={"order_id": order.id})

        amount_cents = _order_amount_cents(order)
        if amount_cents <= 0:
            raise ValidationError("Order total must be positive", details={"amount_cents": amount_cents})

        tip = tip_cents if tip_cents is not None else to_cents(Decimal(order.tip_amount or 0))
        total_cents = amount_cents + tip

        card = None
        planned = 0
        if gift_card_code:
            card = gift_card_service.get_gift_card_by_code(business_id, gift_card_code)
            gift_card_service.ensure_usable(card)
            requested = gift_card_amount_cents if gift_card_amount_cents is not None else total_cents
            planned = min(requested, card.balance, total_cents)

        gateway_cents = total_cents - planned

        payment = Payment(
            business_id=business_id,
            order_id=order.id,
            employee_id=employee_id,
            amount_cents=amount_cents,
            tip_cents=tip,
            currency=currency,
            method=_choose_method(planned, gateway_cents),
            status=PAYMENT_STATUS_PENDING,
            is_open=True,
            gift_card_id=card.id if card is not None and planned > 0 else None,
            gift_card_planned_cents=planned,
            gift_card_charged_cents=0,
            gateway_amount_cents=gateway_cents,
            created_at=utcnow(),
        )
        db.session.add(payment)
        try:
            db.session.flush()
        except IntegrityError as e:
            db.session.rollback()
            raise InvalidStateError("Payment already pending", details={"order_id": order_id}) from e

        if gateway_cents == 0:
            _settle(payment, order)
            db.session.commit()
            current_app.logger.info(
                "Payment %s settled by gift card (order %s, %s cents)", payment.id, order.id, total_cents
            )
            return payment

        session = get_gateway().create_checkout_session(
            gateway_cents,
            currency,
            f"{base_url}/api/payments/success?session_id={{CHECKOUT_SESSION_ID}}",
            f"{base_url}/api/payments/cancel?session_id={{CHECKOUT_SESSION_ID}}",
            payment.id,
        )
        payment.external_session_id = session.session_id
        payment.checkout_url = session.url
        db.session.commit()
        current_app.logger.info(
            "Payment %s pending checkout session %s (order %s, %s cents)",
            payment.id, session.session_id, order.id, gateway_cents,
        )
        return payment

    return run_with_retry(_op)


def confirm_success(session_id: str) -> Payment | None:
    """
    Gateway reported a completed checkout.

    Unknown session or already Success: no-op. Cancelled or Refunded: InvalidStateError.
    """
    def _op():
        payment = db.session.query(Payment).filter_by(external_session_id=session_id).first()
        if payment is None:
            current_app.logger.warning("Checkout completed for unknown session %s", session_id)
            return None
        if payment.status == PAYMENT_STATUS_SUCCESS:
            return payment
        if payment.status in (PAYMENT_STATUS_CANCELLED, PAYMENT_STATUS_REFUNDED):
            raise InvalidStateError(
                "Payment can no longer be confirmed",
                details={"payment_id": payment.id, "status": payment.status},
            )

        order = db.session.get(Order, payment.order_id)
        _settle(payment, order)
        db.session.commit()
        current_app.logger.info("Payment %s settled via session %s", payment.id, session_id)
        return payment

    return run_with_retry(_op)


def cancel_pending(session_id: str) -> Payment | None:
    """Checkout expired: Pending -> Cancelled and the order goes back to Open. No money or stock moves."""
    def _op():
        payment = db.session.query(Payment).filter_by(external_session_id=session_id).first()
        if payment is None or payment.status != PAYMENT_STATUS_PENDING:
            return payment

        payment.status = PAYMENT_STATUS_CANCELLED
        payment.is_open = False

        order = db.session.get(Order, payment.order_id)
        if order.status != ORDER_STATUS_OPEN:
            order.status = ORDER_STATUS_OPEN
            order.closed_at = None

        db.session.commit()
        current_app.logger.info("Payment %s cancelled (session %s expired)", payment.id, session_id)
        return payment

    return run_with_retry(_op)


def refund_full(payment_id: int, business_id: int | None = None) -> Payment:
    """
    Refund a settled payment in full.

    Three steps:
    1. Claim: refund_requested_at is set and committed under the payment's
       version check. A second caller sees the claim and is rejected.
    2. The gateway portion (total minus what the gift card paid) is refunded.
       A gateway failure releases the claim and nothing else changes.
    3. In one transaction: the gift card gets back what was actually charged,
       every Product line returns to stock, the payment becomes Refunded and
       the order Cancelled.

    Raises:
        NotFoundError: payment not in this business
        InvalidStateError: not Success, refund already claimed, order not Closed
        GatewayError: gateway refund failed (claim released)
    """
    def _claim():
        q = db.session.query(Payment).filter_by(id=payment_id)
        if business_id is not None:
            q = q.filter_by(business_id=business_id)
        p = q.first()
        if p is None:
            raise NotFoundError("Payment not found")
        if p.status != PAYMENT_STATUS_SUCCESS:
            raise InvalidStateError(
                "Only successful payments can be refunded",
                details={"payment_id": p.id, "status": p.status},
            )
        if p.refund_requested_at is not None:
            raise InvalidStateError("Refund already in progress", details={"payment_id": p.id})

        order = db.session.get(Order, p.order_id)
        if order.status != ORDER_STATUS_CLOSED:
            raise InvalidStateError(
                "Refund requires the order to be Closed",
                details={"payment_id": p.id, "order_id": order.id, "order_status": order.status},
            )

        gateway_cents = p.total_cents - p.gift_card_charged_cents
        if gateway_cents > 0 and not p.external_session_id:
            raise InvalidStateError("Payment has no gateway session to refund", details={"payment_id": p.id})

        p.refund_requested_at = utcnow()
        db.session.commit()
        return p.external_session_id, gateway_cents

    def _release():
        p = db.session.get(Payment, payment_id)
        p.refund_requested_at = None
        db.session.commit()

    def _finalize():
        p = db.session.get(Payment, payment_id)
        if p.status != PAYMENT_STATUS_SUCCESS or p.refund_requested_at is None:
            raise InvalidStateError(
                "Payment is not awaiting a refund",
                details={"payment_id": p.id, "status": p.status},
            )

        if p.gift_card_id is not None and p.gift_card_charged_cents > 0:
            card = db.session.get(GiftCard, p.gift_card_id)
            if card is None:
                raise NotFoundError("Gift card not found")
            gift_card_service.credit_locked(card, p.gift_card_charged_cents)

        order = db.session.get(Order, p.order_id)
        return_order_stock(order, note=f"Payment {p.id} refunded")

        now = utcnow()
        p.status = PAYMENT_STATUS_REFUNDED
        p.is_open = False
        p.refunded_at = now

        order.status = ORDER_STATUS_CANCELLED
        order.closed_at = now

        db.session.commit()
        return p

    session_id, gateway_refund_cents = run_with_retry(_claim)

    if gateway_refund_cents > 0:
        try:
            get_gateway().refund(session_id, gateway_refund_cents)
        except GatewayError:
            run_with_retry(_release)
            raise

    try:
        payment = run_with_retry(_finalize)
    except Exception:
        current_app.logger.exception(
            "Payment %s refund not recorded after gateway step; refund claim left in place", payment_id
        )
        raise

    current_app.logger.info(
        "Payment %s refunded (gift card %s cents, gateway %s cents)",
        payment.id, payment.gift_card_charged_cents, gateway_refund_cents,
    )
    return payment
