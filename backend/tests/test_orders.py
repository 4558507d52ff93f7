"""
Order lifecycle, line snapshots, access rules and stock side effects.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from tabcore.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from tabcore.extensions import db
from tabcore.models import CatalogItem, Order, OrderLine, Reservation, StockItem, StockMovement
from tabcore.services import discount_service, order_service, stock_service
from tabcore.snapshots import parse_discount_snapshot
from tabcore.time_utils import utcnow


def _on_hand(stock_item_id):
    return Decimal(db.session.get(StockItem, stock_item_id).qty_on_hand)


def _open_order(business, employee):
    return order_service.create_order(business.id, employee.id, employee.role, table_or_area="T1")


def _add(business, order, employee, item, qty):
    return order_service.add_line(
        business.id, order.id, employee.id, employee.role, catalog_item_id=item.id, quantity=qty
    )


# =============================================================================
# CREATE / HEADER
# =============================================================================

def test_create_order_snapshots_newest_order_discount(business, staff):
    now = utcnow()
    discount = discount_service.create_discount(
        business.id, code="HAPPY", discount_type="Percent", scope="Order", value=15,
        starts_at=now - timedelta(hours=1), ends_at=now + timedelta(hours=1),
    )

    order = _open_order(business, staff)

    assert order.status == "Open"
    assert order.employee_id == staff.id
    assert order.closed_at is None
    assert order.discount_id == discount.id
    assert parse_discount_snapshot(order.discount_snapshot).value == Decimal("15")


def test_create_order_validates_reservation(business, other_business, staff):
    foreign = Reservation(business_id=other_business.id)
    db.session.add(foreign)
    db.session.commit()

    with pytest.raises(NotFoundError):
        order_service.create_order(business.id, staff.id, staff.role, reservation_id=foreign.id)


def test_update_order_header(business, staff, manager, other_staff):
    order = _open_order(business, staff)

    updated = order_service.update_order(
        business.id, order.id, staff.id, staff.role, table_or_area="Patio 2", tip_amount="3.5"
    )
    assert updated.table_or_area == "Patio 2"
    assert Decimal(updated.tip_amount) == Decimal("3.50")

    with pytest.raises(ForbiddenError):
        order_service.update_order(business.id, order.id, staff.id, staff.role, employee_id=other_staff.id)

    reassigned = order_service.update_order(
        business.id, order.id, manager.id, manager.role, employee_id=other_staff.id
    )
    assert reassigned.employee_id == other_staff.id


# =============================================================================
# LINES
# =============================================================================

def test_add_product_line_captures_snapshots_and_sells_stock(business, staff, product, product_stock, vat_rule):
    order = _open_order(business, staff)

    line = _add(business, order, staff, product, 3)

    assert line.item_name_snapshot == "House Wine Bottle"
    assert Decimal(line.unit_price_snapshot) == Decimal("50.00")
    assert Decimal(line.tax_rate_snapshot_pct) == Decimal("21")
    assert line.catalog_type_snapshot == "Product"
    assert line.performed_by_employee_id == staff.id
    assert _on_hand(product_stock.id) == Decimal("7")

    sale = db.session.query(StockMovement).filter_by(order_line_id=line.id).one()
    assert sale.type == "Sale"
    assert Decimal(sale.delta) == Decimal("-3")


def test_snapshots_survive_catalog_price_change(business, staff, product, product_stock):
    order = _open_order(business, staff)
    line = _add(business, order, staff, product, 1)

    item = db.session.get(CatalogItem, product.id)
    item.base_price = Decimal("99.00")
    db.session.commit()

    line = order_service.get_line(business.id, order.id, line.id, staff.id, staff.role)
    assert Decimal(line.unit_price_snapshot) == Decimal("50.00")


def test_add_line_with_insufficient_stock_is_atomic(business, staff, product, product_stock):
    order = _open_order(business, staff)

    with pytest.raises(InvalidStateError):
        _add(business, order, staff, product, 11)

    assert db.session.query(OrderLine).filter_by(order_id=order.id).count() == 0
    assert _on_hand(product_stock.id) == Decimal("10")


def test_service_line_does_not_touch_stock(business, staff, service_item, product_stock):
    order = _open_order(business, staff)
    line = _add(business, order, staff, service_item, 2)

    assert db.session.query(StockMovement).filter_by(order_line_id=line.id).count() == 0
    assert _on_hand(product_stock.id) == Decimal("10")


def test_add_line_rejects_foreign_item_and_bad_quantity(business, staff, foreign_product, product):
    order = _open_order(business, staff)

    with pytest.raises(NotFoundError):
        _add(business, order, staff, foreign_product, 1)
    with pytest.raises(ValidationError):
        _add(business, order, staff, product, 0)


def test_update_line_quantity_moves_signed_delta(business, staff, product, product_stock):
    order = _open_order(business, staff)
    line = _add(business, order, staff, product, 2)

    order_service.update_line(business.id, order.id, line.id, staff.id, staff.role, quantity=5)
    assert _on_hand(product_stock.id) == Decimal("5")

    order_service.update_line(business.id, order.id, line.id, staff.id, staff.role, quantity=1)
    assert _on_hand(product_stock.id) == Decimal("9")

    types = [m.type for m in db.session.query(StockMovement).filter_by(order_line_id=line.id).order_by(StockMovement.id)]
    assert types == ["Sale", "Sale", "RefundReturn"]


def test_update_line_discount_assign_and_clear(business, staff, product, product_stock):
    now = utcnow()
    order = _open_order(business, staff)
    line = _add(business, order, staff, product, 1)
    assert line.discount_snapshot is None

    discount = discount_service.create_discount(
        business.id, code="WINE5", discount_type="Amount", scope="Line", value=5,
        starts_at=now - timedelta(hours=1), ends_at=now + timedelta(hours=1),
        eligible_catalog_item_ids=[product.id],
    )

    line = order_service.update_line(business.id, order.id, line.id, staff.id, staff.role, discount_id=discount.id)
    snapshot = parse_discount_snapshot(line.discount_snapshot)
    assert snapshot.discount_id == discount.id
    assert snapshot.catalog_item_id == product.id
    assert Decimal(line.unit_price_snapshot) == Decimal("50.00")

    line = order_service.update_line(business.id, order.id, line.id, staff.id, staff.role, clear_discount=True)
    assert line.discount_id is None
    assert line.discount_snapshot is None


def test_remove_line_restores_stock(business, staff, product, product_stock):
    order = _open_order(business, staff)
    line_id = _add(business, order, staff, product, 4).id

    order_service.remove_line(business.id, order.id, line_id, staff.id, staff.role)

    assert db.session.get(OrderLine, line_id) is None
    assert _on_hand(product_stock.id) == Decimal("10")
    assert stock_service.verify_ledger() == []


# =============================================================================
# LIFECYCLE
# =============================================================================

def test_cancel_restores_stock_and_freezes_order(business, staff, product, product_stock):
    order = _open_order(business, staff)
    _add(business, order, staff, product, 2)
    _add(business, order, staff, product, 3)
    assert _on_hand(product_stock.id) == Decimal("5")

    cancelled = order_service.cancel_order(business.id, order.id, staff.id, staff.role)

    assert cancelled.status == "Cancelled"
    assert cancelled.closed_at is not None
    assert _on_hand(product_stock.id) == Decimal("10")

    with pytest.raises(InvalidStateError):
        _add(business, order, staff, product, 1)
    with pytest.raises(InvalidStateError):
        order_service.close_order(business.id, order.id, staff.id, staff.role)


def test_close_does_not_move_stock(business, staff, product, product_stock):
    order = _open_order(business, staff)
    _add(business, order, staff, product, 2)

    closed = order_service.close_order(business.id, order.id, staff.id, staff.role)

    assert closed.status == "Closed"
    assert _on_hand(product_stock.id) == Decimal("8")


def test_reopen_is_manager_only_and_resells_cancelled_lines(business, staff, manager, product, product_stock):
    order = _open_order(business, staff)
    _add(business, order, staff, product, 2)
    order_service.cancel_order(business.id, order.id, staff.id, staff.role)

    with pytest.raises(ForbiddenError):
        order_service.reopen_order(business.id, order.id, staff.id, staff.role)

    reopened = order_service.reopen_order(business.id, order.id, manager.id, manager.role)

    assert reopened.status == "Open"
    assert reopened.closed_at is None
    assert _on_hand(product_stock.id) == Decimal("8")
    assert stock_service.verify_ledger() == []


def test_delete_order_rejected_while_lines_exist(business, staff, service_item):
    order = _open_order(business, staff)
    line = _add(business, order, staff, service_item, 1)

    with pytest.raises(InvalidStateError):
        order_service.delete_order(business.id, order.id, staff.id, staff.role)

    order_id = order.id
    order_service.remove_line(business.id, order_id, line.id, staff.id, staff.role)
    order_service.delete_order(business.id, order_id, staff.id, staff.role)

    assert db.session.get(Order, order_id) is None


# =============================================================================
# ACCESS
# =============================================================================

def test_staff_only_sees_own_orders(business, staff, other_staff, manager, owner):
    order = _open_order(business, staff)

    with pytest.raises(ForbiddenError):
        order_service.get_order(business.id, order.id, other_staff.id, other_staff.role)

    assert order_service.get_order(business.id, order.id, manager.id, manager.role).id == order.id
    assert order_service.get_order(business.id, order.id, owner.id, owner.role).id == order.id


def test_order_lookup_is_scoped_to_business(business, other_business, staff):
    order = _open_order(business, staff)

    with pytest.raises(NotFoundError):
        order_service.get_order(other_business.id, order.id, staff.id, "Owner")


def test_listing_orders(business, staff, other_staff, manager):
    mine = _open_order(business, staff)
    theirs = _open_order(business, other_staff)
    order_service.close_order(business.id, theirs.id, other_staff.id, other_staff.role)

    with pytest.raises(ForbiddenError):
        order_service.list_all_orders(business.id, staff.id, staff.role)

    all_orders = order_service.list_all_orders(business.id, manager.id, manager.role)
    assert {o.id for o in all_orders} == {mine.id, theirs.id}

    closed = order_service.list_all_orders(business.id, manager.id, manager.role, status="Closed")
    assert [o.id for o in closed] == [theirs.id]

    assert [o.id for o in order_service.list_my_open_orders(business.id, staff.id, staff.role)] == [mine.id]
    assert order_service.list_my_open_orders(business.id, other_staff.id, other_staff.role) == []
