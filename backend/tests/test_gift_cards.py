"""
Gift card balance ledger, including a lost-update race on redeem.
"""

from datetime import timedelta

import pytest
from sqlalchemy import event, text

from tabcore.errors import InvalidStateError, NotFoundError, ValidationError
from tabcore.extensions import db
from tabcore.models import GiftCard
from tabcore.services import gift_card_service
from tabcore.time_utils import utcnow


@pytest.fixture
def card(business):
    return gift_card_service.create_gift_card(business.id, "GC-100", 100)


def _balance(card_id):
    return db.session.get(GiftCard, card_id).balance


def test_redeem_charges_up_to_balance(business, card):
    assert gift_card_service.redeem(card.id, 30, business.id) == (30, 70)
    assert gift_card_service.redeem(card.id, 500, business.id) == (70, 0)

    # Empty card: valid no-op
    assert gift_card_service.redeem(card.id, 10, business.id) == (0, 0)


def test_redeem_rejects_wrong_business_and_bad_amounts(other_business, card):
    with pytest.raises(InvalidStateError):
        gift_card_service.redeem(card.id, 10, other_business.id)
    with pytest.raises(ValidationError):
        gift_card_service.redeem(card.id, 0, card.business_id)
    with pytest.raises(NotFoundError):
        gift_card_service.redeem(999999, 10, card.business_id)

    assert _balance(card.id) == 100


def test_blocked_and_expired_cards_are_unusable(business, card):
    expired = gift_card_service.create_gift_card(
        business.id, "GC-OLD", 50, expires_at=utcnow() - timedelta(days=1)
    )
    gift_card_service.deactivate_gift_card(business.id, card.id)

    with pytest.raises(InvalidStateError):
        gift_card_service.redeem(card.id, 10, business.id)
    with pytest.raises(InvalidStateError):
        gift_card_service.top_up(card.id, 10)
    with pytest.raises(InvalidStateError):
        gift_card_service.redeem(expired.id, 10, business.id)


def test_top_up(card):
    assert gift_card_service.top_up(card.id, 25) == 125
    with pytest.raises(ValidationError):
        gift_card_service.top_up(card.id, -5)


def test_lookup_and_listing(business, other_business, card):
    assert gift_card_service.get_gift_card_by_code(business.id, "GC-100").id == card.id
    with pytest.raises(NotFoundError):
        gift_card_service.get_gift_card_by_code(other_business.id, "GC-100")

    gift_card_service.create_gift_card(business.id, "PROMO-1", 10)
    assert [c.code for c in gift_card_service.list_gift_cards(business.id, code="promo")] == ["PROMO-1"]

    with pytest.raises(InvalidStateError):
        gift_card_service.create_gift_card(business.id, "GC-100", 5)


def test_concurrent_redeem_retries_from_fresh_balance(business, card):
    """
    Another till spends 60 between our read and our write.

    Our UPDATE ... WHERE version_id = 1 then matches no row, the unit of work is
    retried from a fresh read, and only the 40 that is really left gets charged.
    """
    card_id = card.id
    session = db.session()
    fired = []

    def competing_redeem(sess, flush_context, instances):
        if fired:
            return
        fired.append(True)
        with db.engine.begin() as conn:
            conn.execute(
                text("UPDATE gift_cards SET balance = balance - 60, version_id = version_id + 1 WHERE id = :id"),
                {"id": card_id},
            )

    event.listen(session, "before_flush", competing_redeem)
    try:
        charged, remaining = gift_card_service.redeem(card_id, 80, business.id)
    finally:
        event.remove(session, "before_flush", competing_redeem)

    assert fired == [True]
    assert (charged, remaining) == (40, 0)
    assert _balance(card_id) == 0


def test_locked_helpers_leave_commit_to_the_caller(business, card):
    card_id = card.id
    loaded = db.session.get(GiftCard, card_id)

    assert gift_card_service.redeem_locked(loaded, 30, business.id) == (30, 70)
    assert gift_card_service.credit_locked(loaded, 5) == 75
    db.session.rollback()

    assert _balance(card_id) == 100
    assert gift_card_service.require_positive_cents(25, "amount") == 25
    with pytest.raises(ValidationError):
        gift_card_service.require_positive_cents(0, "amount")
