"""
Moving / splitting lines between two Open orders.
"""

from decimal import Decimal

import pytest

from tabcore.errors import ForbiddenError, InvalidStateError, ValidationError
from tabcore.extensions import db
from tabcore.models import OrderLine, StockItem, StockMovement
from tabcore.services import order_service


@pytest.fixture
def tabs(business, staff, product, product_stock, vat_rule):
    """Two Open orders owned by staff; the source holds 4 + 2 wine bottles."""
    source = order_service.create_order(business.id, staff.id, staff.role, table_or_area="T1")
    target = order_service.create_order(business.id, staff.id, staff.role, table_or_area="T2")
    first = order_service.add_line(
        business.id, source.id, staff.id, staff.role, catalog_item_id=product.id, quantity=4
    )
    second = order_service.add_line(
        business.id, source.id, staff.id, staff.role, catalog_item_id=product.id, quantity=2
    )
    return source, target, first, second


def _move(business, staff, source, target, lines, role=None, caller_id=None):
    return order_service.move_lines(
        business.id,
        source.id,
        caller_id or staff.id,
        role or staff.role,
        target_order_id=target.id,
        lines=lines,
    )


def _qty(order):
    return sum(
        (Decimal(l.quantity) for l in db.session.query(OrderLine).filter_by(order_id=order.id)),
        Decimal("0"),
    )


def test_full_move_reassigns_line_in_place(business, staff, tabs):
    source, target, first, _ = tabs

    moved = _move(business, staff, source, target, [(first.id, 4)])

    assert len(moved) == 1
    assert moved[0].id == first.id
    assert moved[0].order_id == target.id
    assert db.session.query(OrderLine).filter_by(order_id=target.id).count() == 1


def test_partial_move_clones_snapshots(business, staff, tabs):
    source, target, first, _ = tabs
    movements_before = db.session.query(StockMovement).count()

    moved = _move(business, staff, source, target, [(first.id, Decimal("1.5"))])

    clone = moved[0]
    original = db.session.get(OrderLine, first.id)
    assert clone.id != first.id
    assert clone.order_id == target.id
    assert Decimal(clone.quantity) == Decimal("1.5")
    assert Decimal(original.quantity) == Decimal("2.5")
    assert clone.item_name_snapshot == original.item_name_snapshot
    assert clone.unit_price_snapshot == original.unit_price_snapshot
    assert clone.tax_rate_snapshot_pct == original.tax_rate_snapshot_pct
    assert clone.discount_snapshot == original.discount_snapshot

    # Goods already left stock when the lines were added
    assert db.session.query(StockMovement).count() == movements_before


def test_move_preserves_total_quantity(business, staff, tabs, product_stock):
    source, target, first, second = tabs

    _move(business, staff, source, target, [(first.id, 1), (second.id, None)])

    assert _qty(source) + _qty(target) == Decimal("6")
    assert Decimal(db.session.get(StockItem, product_stock.id).qty_on_hand) == Decimal("4")


def test_move_is_all_or_nothing(business, staff, tabs):
    source, target, first, second = tabs

    with pytest.raises(ValidationError):
        _move(business, staff, source, target, [(first.id, 4), (second.id, 3)])

    assert db.session.get(OrderLine, first.id).order_id == source.id
    assert db.session.query(OrderLine).filter_by(order_id=target.id).count() == 0


def test_move_rejects_bad_requests(business, staff, tabs):
    source, target, first, _ = tabs

    with pytest.raises(ValidationError):
        _move(business, staff, source, target, [(first.id, 1), (first.id, 1)])
    with pytest.raises(ValidationError):
        _move(business, staff, source, target, [(first.id, 0)])
    with pytest.raises(ValidationError):
        _move(business, staff, source, target, [])
    with pytest.raises(InvalidStateError):
        _move(business, staff, source, source, [(first.id, 1)])


def test_move_requires_both_orders_open(business, staff, tabs):
    source, target, first, _ = tabs
    order_service.close_order(business.id, target.id, staff.id, staff.role)

    with pytest.raises(InvalidStateError):
        _move(business, staff, source, target, [(first.id, 1)])


def test_staff_cannot_move_from_someone_elses_order(business, staff, other_staff, manager, tabs):
    source, target, first, _ = tabs

    with pytest.raises(ForbiddenError):
        _move(business, staff, source, target, [(first.id, 1)], role=other_staff.role, caller_id=other_staff.id)

    moved = _move(business, staff, source, target, [(first.id, 1)], role=manager.role, caller_id=manager.id)
    assert moved[0].performed_by_employee_id == manager.id
