# Overview: Order lifecycle and order line mutations; captures snapshots and moves stock for Product lines.

"""
Order Aggregate & Line Mutation Pipeline

STATE MACHINE:
    Open -> Closed      close_order, or payment settlement
    Open -> Cancelled   cancel_order
    Closed -> Cancelled full refund of the settled payment
    Closed/Cancelled -> Open   reopen_order (managers/owners only, never once settled)

PAYMENTS:
- While a payment is Pending the order is frozen: no line changes, no moves
  in or out, no discount or tip changes, no close or cancel.
- A settled order only leaves Closed through refund_full.

ACCESS:
- Staff may only see and change orders they own (order.employee_id).
- Managers and owners may act on any order of their business.

STOCK:
- Product lines move stock through the ledger, linked to the line:
    add_line            Sale        -qty
    update_line (more)  Sale        -diff
    update_line (less)  RefundReturn +diff
    remove_line         RefundReturn +qty
    cancel_order        RefundReturn +qty per line
    reopen (Cancelled)  Sale        -qty per line
- close_order and move_lines never touch stock.

SNAPSHOTS:
- Item name, unit price, tax class/rate, catalog type and the newest eligible
  line discount are frozen when the line is added and never recomputed.

Every public write runs as one closure inside run_with_retry; any failure
(insufficient stock included) rolls the whole operation back.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from ..errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Business, CatalogItem, Employee, Order, OrderLine, Payment, Reservation
from ..models.inventory import MOVEMENT_REFUND_RETURN, MOVEMENT_SALE
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_CLOSED,
    ORDER_STATUS_OPEN,
    VALID_ORDER_STATUSES,
)
from ..models.payments import PAYMENT_STATUS_SUCCESS
from ..models.tenancy import ROLE_MANAGER, ROLE_OWNER
from ..money import round_money, to_decimal
from tabcore.time_utils import utcnow, as_utc_naive
from . import discount_service, tax_service
from .concurrency import run_with_retry
from .stock_service import apply_movement_locked, get_stock_item_for_catalog_item


def is_manager_or_owner(role: str | None) -> bool:
    return role in (ROLE_MANAGER, ROLE_OWNER)


# =============================================================================
# GUARDS
# =============================================================================

def _get_order(business_id: int, order_id: int) -> Order:
    order = db.session.query(Order).filter_by(id=order_id, business_id=business_id).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def _ensure_can_access(order: Order, caller_employee_id: int, caller_role: str) -> None:
    if is_manager_or_owner(caller_role):
        return
    if order.employee_id != caller_employee_id:
        raise ForbiddenError("Staff can only access their own orders")


def _ensure_open(order: Order) -> None:
    if order.status != ORDER_STATUS_OPEN:
        raise InvalidStateError(
            "Operation allowed only for Open orders",
            details={"order_id": order.id, "status": order.status},
        )


def _ensure_no_open_payment(order: Order) -> None:
    pending = db.session.query(Payment.id).filter_by(order_id=order.id, is_open=True).first()
    if pending is not None:
        raise InvalidStateError("Order has a pending payment", details={"order_id": order.id})


def _ensure_not_settled(order: Order) -> None:
    settled = (
        db.session.query(Payment.id)
        .filter_by(order_id=order.id, status=PAYMENT_STATUS_SUCCESS)
        .first()
    )
    if settled is not None:
        raise InvalidStateError(
            "Order has a settled payment; refund it instead",
            details={"order_id": order.id, "payment_id": settled.id},
        )


def _load_for_caller(business_id, order_id, caller_employee_id, caller_role) -> Order:
    order = _get_order(business_id, order_id)
    _ensure_can_access(order, caller_employee_id, caller_role)
    return order


def _get_line_row(business_id: int, order_id: int, line_id: int) -> OrderLine:
    line = (
        db.session.query(OrderLine)
        .filter_by(id=line_id, order_id=order_id, business_id=business_id)
        .first()
    )
    if line is None:
        raise NotFoundError("Order line not found")
    return line


def _lines_of(order: Order) -> list[OrderLine]:
    return (
        db.session.query(OrderLine)
        .filter_by(order_id=order.id, business_id=order.business_id)
        .order_by(OrderLine.id)
        .all()
    )


def _require_positive_qty(quantity, field: str = "quantity") -> Decimal:
    quantity = to_decimal(quantity, field)
    if quantity <= 0:
        raise ValidationError(f"{field} must be positive")
    return quantity


# =============================================================================
# STOCK HOOKS
# =============================================================================

def _move_line_stock(line: OrderLine, movement_type: str, delta: Decimal, note: str | None = None) -> None:
    """Book a ledger movement for a Product line; Service lines are skipped."""
    if not line.is_product or delta == 0:
        return
    stock_item = get_stock_item_for_catalog_item(line.catalog_item_id)
    if stock_item is None:
        raise NotFoundError(
            "Stock item not found for catalog item",
            details={"catalog_item_id": line.catalog_item_id},
        )
    apply_movement_locked(stock_item, movement_type, delta, order_line_id=line.id, note=note)


def return_order_stock(order: Order, note: str) -> None:
    """RefundReturn the full quantity of every Product line. No commit."""
    for line in _lines_of(order):
        _move_line_stock(line, MOVEMENT_REFUND_RETURN, Decimal(line.quantity), note=note)


def _sell_order_stock(order: Order, note: str) -> None:
    for line in _lines_of(order):
        _move_line_stock(line, MOVEMENT_SALE, -Decimal(line.quantity), note=note)


# =============================================================================
# QUERIES
# =============================================================================

def list_all_orders(
    business_id: int,
    caller_employee_id: int,
    caller_role: str,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[Order]:
    if not is_manager_or_owner(caller_role):
        raise ForbiddenError("Only managers and owners can list all orders")

    q = db.session.query(Order).filter(Order.business_id == business_id)
    if status:
        if status not in VALID_ORDER_STATUSES:
            raise ValidationError(f"Invalid order status: {status}")
        q = q.filter(Order.status == status)
    if date_from is not None:
        q = q.filter(Order.created_at >= as_utc_naive(date_from))
    if date_to is not None:
        q = q.filter(Order.created_at <= as_utc_naive(date_to))
    return q.order_by(Order.created_at.desc(), Order.id.desc()).all()


def list_my_open_orders(business_id: int, caller_employee_id: int, caller_role: str) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(
            Order.business_id == business_id,
            Order.employee_id == caller_employee_id,
            Order.status == ORDER_STATUS_OPEN,
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def get_order(business_id: int, order_id: int, caller_employee_id: int, caller_role: str) -> Order:
    return _load_for_caller(business_id, order_id, caller_employee_id, caller_role)


def list_lines(business_id: int, order_id: int, caller_employee_id: int, caller_role: str) -> list[OrderLine]:
    order = _load_for_caller(business_id, order_id, caller_employee_id, caller_role)
    return _lines_of(order)


def get_line(
    business_id: int,
    order_id: int,
    line_id: int,
    caller_employee_id: int,
    caller_role: str,
) -> OrderLine:
    _load_for_caller(business_id, order_id, caller_employee_id, caller_role)
    return _get_line_row(business_id, order_id, line_id)


# =============================================================================
# ORDER HEADER COMMANDS
# =============================================================================

def create_order(
    business_id: int,
    caller_employee_id: int,
    caller_role: str,
    *,
    table_or_area: str | None = None,
    reservation_id: int | None = None,
    tip_amount=None,
) -> Order:
    """
    Open a new tab owned by the caller.

    The newest eligible Order-scope discount (if any) is snapshotted onto the order.
    """
    tip = round_money(to_decimal(tip_amount, "tip_amount")) if tip_amount is not None else Decimal("0.00")
    if tip < 0:
        raise ValidationError("tip_amount cannot be negative")

    def _op():
        employee = db.session.query(Employee).filter_by(id=caller_employee_id, business_id=business_id).first()
        if employee is None:
            raise NotFoundError("Employee not found for this business")

        if reservation_id is not None:
            reservation = (
                db.session.query(Reservation.id)
                .filter_by(id=reservation_id, business_id=business_id)
                .first()
            )
            if reservation is None:
                raise NotFoundError("Reservation not found for this business")

        now = utcnow()
        order = Order(
            business_id=business_id,
            employee_id=caller_employee_id,
            reservation_id=reservation_id,
            status=ORDER_STATUS_OPEN,
            table_or_area=table_or_area,
            created_at=now,
            tip_amount=tip,
        )

        discount = discount_service.get_newest_order_discount(business_id, now)
        if discount is not None:
            order.discount_id = discount.id
            order.discount_snapshot = discount_service.make_order_discount_snapshot(discount, now)

        db.session.add(order)
        db.session.commit()
        return order

    return run_with_retry(_op)


def update_order(
    business_id: int,
    order_id: int,
    caller_employee_id: int,
    caller_role: str,
    *,
    table_or_area: str | None = None,
    tip_amount=None,
    discount_id: int | None = None,
    clear_discount: bool = False,
    employee_id: int | None = None,
) -> Order:
    """
    Change header fields of an Open order. Only provided fields change.

    An explicit discount_id is re-validated and re-snapshotted; clear_discount
    drops the order-level discount. Reassigning the owning employee is reserved
    for managers and owners.
    """
    if discount_id is not None and clear_discount:
        raise ValidationError("Provide either discount_id or clear_discount, not both")

    tip = None
    if tip_amount is not None:
        tip = round_money(to_decimal(tip_amount, "tip_amount"))
        if tip < 0:
            raise ValidationError("tip_amount cannot be negative")

    if employee_id is not None and not is_manager_or_owner(caller_role):
        raise ForbiddenError("Only managers and owners can reassign orders")

    def _op():
        order = _load_for_caller(business_id, order_id, caller_employee_id, caller_role)
        _ensure_open(order)
        if discount_id is not None or clear_discount or tip is not None:
            _ensure_no_open_payment(order)

        if discount_id is not None:
            discount = discount_service.ensure_order_discount_eligible(business_id, discount_id)
            order.discount_id = discount.id
            order.discount_snapshot = discount_service.make_order_discount_snapshot(discount)
        elif clear_discount:
            order.discount_id = None
            order.discount_snapshot = None

        if employee_id is not None:
            employee = db.session.query(Employee.id).filter_by(id=employee_id, business_id=business_id).first()
            if employee is None:
                raise NotFoundError("Employee not found for this business")
            order.employee_id = employee_id

        if table_or_area is not None:
            order.table_or_area = table_or_area
        if tip is not None:
            order.tip_amount = tip

        db.session.commit()
        return order

    return run_with_retry(_op)


def close_order(business_id: int, order_id: int, caller_employee_id: int, caller_role: str) -> Order:
    def _op():
        order = _load_for_caller(business_id, order_id, caller_employee_id, caller_role)
        _ensure_open(order)
        _ensure_no_open_payment(order)

        order.status = ORDER_STATUS_CLOSED
        order.closed_at = utcnow()
        db.session.commit()
        return order

    return run_with_retry(_op)


def cancel_order(business_id: int, order_id: int, caller_employee_id: int, caller_role: str) -> Order:
    """Cancel an Open order and return every Product line's quantity to stock."""
    def _op():
        order = _load_for_caller(business_id, order_id, caller_employee_id, caller_role)
        _ensure_open(order)
        _ensure_no_open_payment(order)

        return_order_stock(order, note=f"Order {order.id} cancelled")
        order.status = ORDER_STATUS_CANCELLED
        order.closed_at = utcnow()
        db.session.commit()
        return order

    return run_with_retry(_op)


def reopen_order(business_id: int, order_id: int, caller_employee_id: int, caller_role: str) -> Order:
    """
    Move a Closed or Cancelled order back to Open.

    Reopening a Cancelled order sells its Product lines again, since
    cancellation returned them to stock.
    """
    if not is_manager_or_owner(caller_role):
        raise ForbiddenError("Only managers and owners can reopen orders")

    def _op():
        order = _get_order(business_id, order_id)
        if order.status == ORDER_STATUS_OPEN:
            raise InvalidStateError("Order is already Open", details={"order_id": order.id})
        _ensure_not_settled(order)

        if order.status == ORDER_STATUS_CANCELLED:
            _sell_order_stock(order, note=f"Order {order.id} reopened")

        order.status = ORDER_STATUS_OPEN
        order.closed_at = None
        db.session.commit()
        return order

    return run_with_retry(_op)


def delete_order(business_id: int, order_id: int, caller_employee_id: int, caller_role: str) -> None:
    """Delete an empty order. Orders with lines or payments are kept."""
    def _op():
        order = _load_for_caller(business_id, order_id, caller_employee_id, caller_role)

        if db.session.query(OrderLine.id).filter_by(order_id=order.id).first() is not None:
            raise InvalidStateError("Order still has lines", details={"order_id": order.id})
        if db.session.query(Payment.id).filter_by(order_id=order.id).first() is not None:
            raise InvalidStateError("Order has payments", details={"order_id": order.id})

        db.session.delete(order)
        db.session.commit()

    run_with_retry(_op)


# =============================================================================
# LINE COMMANDS
# =============================================================================

def add_line(
    business_id: int,
    order_id: int,
    caller_employee_id: int,
    caller_role: str,
    *,
    catalog_item_id: int,
    quantity,
) -> OrderLine:
    """
    Add a catalog item to an Open order with frozen price/tax/discount snapshots.

    Raises:
        ValidationError: quantity not positive
        NotFoundError: order, catalog item or stock item missing
        ForbiddenError: staff caller does not own the order
        InvalidStateError: order not Open, or insufficient stock
    """
    quantity = _require_positive_qty(quantity)

    def _op():
        order = _load_for_caller(business_id, order_id, caller_employee_id, caller_role)
        _ensure_open(order)
        _ensure_no_open_payment(order)

        item = db.session.query(CatalogItem).filter_by(id=catalog_item_id, business_id=business_id).first()
        if item is None:
            raise NotFoundError("Catalog item not found in this business")

        business = db.session.get(Business, business_id)
        if business is None:
            raise NotFoundError("Business not found")

        now = utcnow()
        line = OrderLine(
            order_id=order.id,
            business_id=business_id,
            catalog_item_id=item.id,
            quantity=quantity,
            item_name_snapshot=item.name,
            unit_price_snapshot=item.base_price,
            tax_class_snapshot=item.tax_class,
            tax_rate_snapshot_pct=tax_service.resolve_tax_rate_pct(business.country_code, item.tax_class, now),
            catalog_type_snapshot=item.type,
            performed_by_employee_id=caller_employee_id,
            performed_at=now,
        )

        discount = discount_service.get_newest_line_discount_for_item(business_id, item.id, now)
        if discount is not None:
            line.discount_id = discount.id
            line.discount_snapshot = discount_service.make_line_discount_snapshot(discount, item.id, now)

        db.session.add(line)
        db.session.flush()

        _move_line_stock(line, MOVEMENT_SALE, -quantity, note=f"Order {order.id} line added")

        db.session.commit()
        return line

    return run_with_retry(_op)


def update_line(
    business_id: int,
    order_id: int,
    line_id: int,
    caller_employee_id: int,
    caller_role: str,
    *,
    quantity=None,
    discount_id: int | None = None,
    clear_discount: bool = False,
) -> OrderLine:
    """
    Change quantity and/or line discount. Price and tax snapshots stay as captured.
    """
    if discount_id is not None and clear_discount:
        raise ValidationError("Provide either discount_id or clear_discount, not both")
    if quantity is not None:
        quantity = _require_positive_qty(quantity)

    def _op():
        order = _load_for_caller(business_id, order_id, caller_employee_id, caller_role)
        _ensure_open(order)
        _ensure_no_open_payment(order)
        line = _get_line_row(business_id, order.id, line_id)

        if quantity is not None:
            diff = quantity - Decimal(line.quantity)
            if diff > 0:
                _move_line_stock(line, MOVEMENT_SALE, -diff, note=f"Order {order.id} line increased")
            elif diff < 0:
                _move_line_stock(line, MOVEMENT_REFUND_RETURN, -diff, note=f"Order {order.id} line decreased")
            line.quantity = quantity

        if discount_id is not None:
            discount = discount_service.ensure_line_discount_eligible(business_id, discount_id, line.catalog_item_id)
            line.discount_id = discount.id
            line.discount_snapshot = discount_service.make_line_discount_snapshot(discount, line.catalog_item_id)
        elif clear_discount:
            line.discount_id = None
            line.discount_snapshot = None

        line.performed_by_employee_id = caller_employee_id
        line.performed_at = utcnow()

        db.session.commit()
        return line

    return run_with_retry(_op)


def remove_line(
    business_id: int,
    order_id: int,
    line_id: int,
    caller_employee_id: int,
    caller_role: str,
) -> None:
    """Delete a line, returning its full quantity to stock first for Product lines."""
    def _op():
        order = _load_for_caller(business_id, order_id, caller_employee_id, caller_role)
        _ensure_open(order)
        _ensure_no_open_payment(order)
        line = _get_line_row(business_id, order.id, line_id)

        _move_line_stock(line, MOVEMENT_REFUND_RETURN, Decimal(line.quantity), note=f"Order {order.id} line removed")

        db.session.delete(line)
        db.session.commit()

    run_with_retry(_op)


def move_lines(
    business_id: int,
    from_order_id: int,
    caller_employee_id: int,
    caller_role: str,
    *,
    target_order_id: int,
    lines: list[tuple[int, object]],
) -> list[OrderLine]:
    """
    Move whole lines or partial quantities to another Open order of the business.

    lines is a list of (line_id, quantity); quantity None moves the whole line.
    A full move reassigns the line in place; a partial move decrements the source
    and clones its snapshots onto a new target line. All-or-nothing, no stock
    movement.

    Returns:
        The target-side lines (moved or newly created), in request order.
    """
    if not lines:
        raise ValidationError("At least one line is required")
    if from_order_id == target_order_id:
        raise InvalidStateError("Source and target orders must differ")

    line_ids = [line_id for line_id, _ in lines]
    if len(set(line_ids)) != len(line_ids):
        raise ValidationError("Duplicate line ids in move request")

    requested = []
    for line_id, qty in lines:
        requested.append((line_id, _require_positive_qty(qty) if qty is not None else None))

    def _op():
        source = _get_order(business_id, from_order_id)
        _ensure_can_access(source, caller_employee_id, caller_role)
        target = _get_order(business_id, target_order_id)
        _ensure_open(source)
        _ensure_open(target)
        _ensure_no_open_payment(source)
        _ensure_no_open_payment(target)

        now = utcnow()
        moved = []
        for line_id, qty in requested:
            line = _get_line_row(business_id, source.id, line_id)
            line_qty = Decimal(line.quantity)
            move_qty = line_qty if qty is None else qty
            if move_qty > line_qty:
                raise ValidationError(
                    "Move quantity exceeds line quantity",
                    details={"line_id": line_id, "line_quantity": str(line_qty), "requested": str(move_qty)},
                )

            if move_qty == line_qty:
                line.order_id = target.id
                line.performed_by_employee_id = caller_employee_id
                line.performed_at = now
                moved.append(line)
            else:
                line.quantity = line_qty - move_qty
                clone = OrderLine(
                    order_id=target.id,
                    quantity=move_qty,
                    performed_by_employee_id=caller_employee_id,
                    performed_at=now,
                    **line.clone_snapshot(),
                )
                db.session.add(clone)
                moved.append(clone)

        db.session.commit()
        return moved

    return run_with_retry(_op)
