# Overview: Gift card issuance, lookup and concurrency-safe balance changes.

"""
Gift Card Balance Ledger

- balance is stored in minor units (cents) and never goes negative.
- redeem charges min(balance, amount); a zero charge is a valid no-op.
- Only Active, unexpired cards can be redeemed or topped up.
- Every balance write is guarded by GiftCard.version_id and runs under
  run_with_retry, so two tills redeeming the same card cannot both spend
  the same cents.
"""

from __future__ import annotations

from datetime import datetime

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import GiftCard
from ..models.payments import GIFT_CARD_STATUS_ACTIVE, GIFT_CARD_STATUS_INACTIVE
from tabcore.time_utils import utcnow, as_utc_naive
from .concurrency import run_with_retry


VALID_GIFT_CARD_STATUSES = (GIFT_CARD_STATUS_ACTIVE, GIFT_CARD_STATUS_INACTIVE)


def require_positive_cents(amount, field: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"{field} must be an integer number of cents")
    if amount <= 0:
        raise ValidationError(f"{field} must be positive")
    return amount


def ensure_usable(card: GiftCard, now: datetime | None = None) -> None:
    """Active and not past expires_at, else InvalidStateError."""
    now = as_utc_naive(now) or utcnow()
    if card.status != GIFT_CARD_STATUS_ACTIVE:
        raise InvalidStateError("Gift card is blocked", details={"gift_card_id": card.id})
    if card.expires_at is not None and as_utc_naive(card.expires_at) <= now:
        raise InvalidStateError("Gift card is expired", details={"gift_card_id": card.id})


# =============================================================================
# LOOKUPS
# =============================================================================

def get_gift_card(business_id: int, gift_card_id: int) -> GiftCard:
    card = db.session.query(GiftCard).filter_by(id=gift_card_id, business_id=business_id).first()
    if card is None:
        raise NotFoundError("Gift card not found")
    return card


def get_gift_card_by_code(business_id: int, code: str) -> GiftCard:
    card = (
        db.session.query(GiftCard)
        .filter_by(business_id=business_id, code=(code or "").strip())
        .first()
    )
    if card is None:
        raise NotFoundError("Gift card not found")
    return card


def list_gift_cards(business_id: int, status: str | None = None, code: str | None = None) -> list[GiftCard]:
    q = db.session.query(GiftCard).filter(GiftCard.business_id == business_id)
    if status:
        if status not in VALID_GIFT_CARD_STATUSES:
            raise ValidationError(f"Invalid gift card status: {status}")
        q = q.filter(GiftCard.status == status)
    if code:
        q = q.filter(GiftCard.code.ilike(f"%{code.strip()}%"))
    return q.order_by(GiftCard.issued_at.desc(), GiftCard.id.desc()).all()


# =============================================================================
# ISSUANCE
# =============================================================================

def create_gift_card(
    business_id: int,
    code: str,
    initial_balance_cents: int = 0,
    expires_at: datetime | None = None,
) -> GiftCard:
    code = (code or "").strip()
    if not code:
        raise ValidationError("code is required")
    if isinstance(initial_balance_cents, bool) or not isinstance(initial_balance_cents, int):
        raise ValidationError("initial_balance_cents must be an integer number of cents")
    if initial_balance_cents < 0:
        raise ValidationError("initial_balance_cents cannot be negative")

    def _op():
        existing = db.session.query(GiftCard.id).filter_by(business_id=business_id, code=code).first()
        if existing is not None:
            raise InvalidStateError("Gift card code already exists", details={"code": code})

        card = GiftCard(
            business_id=business_id,
            code=code,
            balance=initial_balance_cents,
            status=GIFT_CARD_STATUS_ACTIVE,
            expires_at=as_utc_naive(expires_at),
            issued_at=utcnow(),
        )
        db.session.add(card)
        db.session.commit()
        return card

    return run_with_retry(_op)


def deactivate_gift_card(business_id: int, gift_card_id: int) -> GiftCard:
    def _op():
        card = get_gift_card(business_id, gift_card_id)
        if card.status != GIFT_CARD_STATUS_INACTIVE:
            card.status = GIFT_CARD_STATUS_INACTIVE
            db.session.commit()
        return card

    return run_with_retry(_op)


# =============================================================================
# BALANCE
# =============================================================================

def redeem_locked(card: GiftCard, amount: int, business_id: int) -> tuple[int, int]:
    """Charge up to `amount` from an already loaded card. No commit."""
    ensure_usable(card)
    if card.business_id != business_id:
        raise InvalidStateError(
            "Gift card belongs to another business",
            details={"gift_card_id": card.id},
        )

    charged = min(card.balance, amount)
    if charged > 0:
        card.balance = card.balance - charged
        db.session.flush()
    return charged, card.balance


def credit_locked(card: GiftCard, amount: int) -> int:
    """Add `amount` to the balance without status checks. No commit."""
    card.balance = card.balance + amount
    db.session.flush()
    return card.balance


def redeem(gift_card_id: int, amount: int, business_id: int) -> tuple[int, int]:
    """
    Charge min(balance, amount) from the card.

    Returns:
        (charged, remaining) in cents

    Raises:
        ValidationError: amount not a positive integer
        NotFoundError: card missing
        InvalidStateError: card blocked, expired or owned by another business
        ConcurrencyConflictError: retry budget exhausted
    """
    amount = require_positive_cents(amount)

    def _op():
        card = db.session.get(GiftCard, gift_card_id)
        if card is None:
            raise NotFoundError("Gift card not found")
        result = redeem_locked(card, amount, business_id)
        db.session.commit()
        return result

    return run_with_retry(_op)


def top_up(gift_card_id: int, amount: int) -> int:
    """Add funds to an Active, unexpired card. Returns the new balance."""
    amount = require_positive_cents(amount)

    def _op():
        card = db.session.get(GiftCard, gift_card_id)
        if card is None:
            raise NotFoundError("Gift card not found")
        ensure_usable(card)
        balance = credit_locked(card, amount)
        db.session.commit()
        return balance

    return run_with_retry(_op)
