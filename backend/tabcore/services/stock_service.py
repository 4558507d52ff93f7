# Overview: Service-layer operations for the stock ledger; encapsulates business logic and database work.

"""
Stock Ledger Invariants (authoritative)

- StockMovement rows are append-only: never updated, never deleted.
- StockItem.qty_on_hand == SUM(StockMovement.delta) for that item, always.
  The projection row and its movement are written in the same transaction.
- On-hand quantity may never go negative: a negative delta that would take
  it below zero fails with "Insufficient stock".
- Average unit cost is recomputed only by Receive movements with positive delta:
    (old_qty * old_avg + delta * unit_cost) / new_qty, 4 dp, half away from zero.
  When new_qty <= 0 the average is left as is. Refunds, sales, waste and
  adjustments never touch it.
- Concurrency: StockItem.version_id is compared on every UPDATE; a lost race
  re-runs the whole unit of work (see concurrency.run_with_retry).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import CatalogItem, OrderLine, StockItem, StockMovement
from ..models.inventory import MOVEMENT_RECEIVE, VALID_MOVEMENT_TYPES
from ..money import round_cost, to_decimal
from tabcore.time_utils import utcnow, as_utc_naive
from .concurrency import run_with_retry


_TYPES_BY_KEY = {t.lower(): t for t in VALID_MOVEMENT_TYPES}


def normalize_movement_type(movement_type: str | None) -> str:
    """Case-insensitive match onto one of the five movement kinds."""
    if movement_type is None or not str(movement_type).strip():
        raise ValidationError("Movement type is required")
    normalized = _TYPES_BY_KEY.get(str(movement_type).strip().lower())
    if normalized is None:
        raise ValidationError(
            f"Invalid movement type: '{movement_type}'. Must be one of: {', '.join(VALID_MOVEMENT_TYPES)}"
        )
    return normalized


# =============================================================================
# LOOKUPS
# =============================================================================

def get_stock_item(business_id: int, stock_item_id: int) -> StockItem:
    stock_item = (
        db.session.query(StockItem)
        .join(CatalogItem, CatalogItem.id == StockItem.catalog_item_id)
        .filter(StockItem.id == stock_item_id, CatalogItem.business_id == business_id)
        .first()
    )
    if stock_item is None:
        raise NotFoundError("Stock item not found")
    return stock_item


def get_stock_item_for_catalog_item(catalog_item_id: int) -> StockItem | None:
    return db.session.query(StockItem).filter_by(catalog_item_id=catalog_item_id).first()


def list_movements(
    business_id: int,
    stock_item_id: int,
    movement_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[StockMovement]:
    """Movements for one stock item, newest first. Date bounds are inclusive."""
    get_stock_item(business_id, stock_item_id)

    q = db.session.query(StockMovement).filter(StockMovement.stock_item_id == stock_item_id)
    if movement_type:
        q = q.filter(StockMovement.type == normalize_movement_type(movement_type))
    if date_from is not None:
        q = q.filter(StockMovement.at >= as_utc_naive(date_from))
    if date_to is not None:
        q = q.filter(StockMovement.at <= as_utc_naive(date_to))

    return q.order_by(StockMovement.at.desc(), StockMovement.id.desc()).all()


def get_movement(business_id: int, stock_item_id: int, movement_id: int) -> StockMovement:
    get_stock_item(business_id, stock_item_id)
    movement = (
        db.session.query(StockMovement)
        .filter_by(id=movement_id, stock_item_id=stock_item_id)
        .first()
    )
    if movement is None:
        raise NotFoundError("Stock movement not found")
    return movement


# =============================================================================
# MOVEMENTS
# =============================================================================

def apply_movement_locked(
    stock_item: StockItem,
    movement_type: str,
    delta: Decimal,
    *,
    unit_cost_snapshot: Decimal | None = None,
    order_line_id: int | None = None,
    note: str | None = None,
) -> StockMovement:
    """
    Core movement logic without retry or commit.

    Called by apply_movement() and by order/payment operations that must move
    stock inside their own transaction. Inputs are assumed normalized.
    """
    previous_qty = Decimal(stock_item.qty_on_hand)
    new_qty = previous_qty + delta

    if delta < 0 and new_qty < 0:
        raise InvalidStateError(
            "Insufficient stock",
            details={
                "stock_item_id": stock_item.id,
                "on_hand": str(previous_qty),
                "requested": str(-delta),
            },
        )

    if movement_type == MOVEMENT_RECEIVE and delta > 0 and unit_cost_snapshot is not None:
        if new_qty > 0:
            weighted = previous_qty * Decimal(stock_item.average_unit_cost) + delta * unit_cost_snapshot
            stock_item.average_unit_cost = round_cost(weighted / new_qty)

    stock_item.qty_on_hand = new_qty

    movement = StockMovement(
        stock_item_id=stock_item.id,
        type=movement_type,
        delta=delta,
        unit_cost_snapshot=unit_cost_snapshot,
        order_line_id=order_line_id,
        at=utcnow(),
        note=note,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _validate_movement(movement_type, delta, unit_cost_snapshot):
    movement_type = normalize_movement_type(movement_type)
    delta = to_decimal(delta, "delta")
    if delta == 0:
        raise ValidationError("Delta cannot be zero")

    if unit_cost_snapshot is not None:
        unit_cost_snapshot = to_decimal(unit_cost_snapshot, "unit_cost_snapshot")
        if unit_cost_snapshot < 0:
            raise ValidationError("unit_cost_snapshot cannot be negative")

    if movement_type == MOVEMENT_RECEIVE and delta > 0 and unit_cost_snapshot is None:
        raise ValidationError("unit_cost_snapshot is required for Receive movements")

    return movement_type, delta, unit_cost_snapshot


def apply_movement(
    stock_item_id: int,
    movement_type: str,
    delta,
    unit_cost_snapshot=None,
    order_line_id: int | None = None,
    *,
    note: str | None = None,
    business_id: int | None = None,
) -> StockMovement:
    """
    Append one movement and update the stock projection.

    When business_id is given the stock item (and linked order line, if any)
    must belong to that business.

    Raises:
        ValidationError: zero delta, unknown type, Receive without unit cost
        NotFoundError: stock item or order line missing
        InvalidStateError: movement would take on-hand below zero,
            or the order line is for a different catalog item
        ConcurrencyConflictError: retry budget exhausted
    """
    movement_type, delta, unit_cost_snapshot = _validate_movement(movement_type, delta, unit_cost_snapshot)

    def _op():
        if business_id is not None:
            stock_item = get_stock_item(business_id, stock_item_id)
        else:
            stock_item = db.session.get(StockItem, stock_item_id)
            if stock_item is None:
                raise NotFoundError("Stock item not found")

        if order_line_id is not None:
            line_q = db.session.query(OrderLine).filter_by(id=order_line_id)
            if business_id is not None:
                line_q = line_q.filter_by(business_id=business_id)
            line = line_q.first()
            if line is None:
                raise NotFoundError("Order line not found")
            if line.catalog_item_id != stock_item.catalog_item_id:
                raise InvalidStateError("Order line does not match this stock item")

        movement = apply_movement_locked(
            stock_item,
            movement_type,
            delta,
            unit_cost_snapshot=unit_cost_snapshot,
            order_line_id=order_line_id,
            note=note,
        )
        db.session.commit()
        return movement

    return run_with_retry(_op)


def create_stock_item(
    business_id: int,
    catalog_item_id: int,
    *,
    unit: str = "pcs",
    initial_qty=None,
    unit_cost=None,
) -> StockItem:
    """
    Create the stock projection for a Product catalog item.

    An opening quantity is booked as a Receive movement so the ledger sum still
    matches qty_on_hand.
    """
    if initial_qty is not None:
        _, initial_qty, unit_cost = _validate_movement(MOVEMENT_RECEIVE, initial_qty, unit_cost)
        if initial_qty < 0:
            raise ValidationError("initial_qty cannot be negative")

    def _op():
        item = (
            db.session.query(CatalogItem)
            .filter_by(id=catalog_item_id, business_id=business_id)
            .first()
        )
        if item is None:
            raise NotFoundError("Catalog item not found in this business")
        if not item.is_product:
            raise InvalidStateError("Only Product catalog items carry stock")
        if get_stock_item_for_catalog_item(catalog_item_id) is not None:
            raise InvalidStateError("Stock item already exists for this catalog item")

        stock_item = StockItem(
            catalog_item_id=catalog_item_id,
            unit=unit,
            qty_on_hand=Decimal("0"),
            average_unit_cost=Decimal("0"),
        )
        db.session.add(stock_item)
        db.session.flush()

        if initial_qty is not None:
            apply_movement_locked(
                stock_item,
                MOVEMENT_RECEIVE,
                initial_qty,
                unit_cost_snapshot=unit_cost,
                note="Opening balance",
            )

        db.session.commit()
        return stock_item

    return run_with_retry(_op)


def verify_ledger(stock_item_id: int | None = None) -> list[dict]:
    """
    Compare each projection against the sum of its movements.

    Returns one entry per stock item whose qty_on_hand disagrees with its ledger.
    """
    sums = dict(
        db.session.query(StockMovement.stock_item_id, func.coalesce(func.sum(StockMovement.delta), 0))
        .group_by(StockMovement.stock_item_id)
        .all()
    )

    q = db.session.query(StockItem)
    if stock_item_id is not None:
        q = q.filter(StockItem.id == stock_item_id)

    mismatches = []
    for stock_item in q.order_by(StockItem.id).all():
        ledger_qty = Decimal(str(sums.get(stock_item.id, 0)))
        if ledger_qty != Decimal(stock_item.qty_on_hand):
            mismatches.append({
                "stock_item_id": stock_item.id,
                "qty_on_hand": str(stock_item.qty_on_hand),
                "ledger_qty": str(ledger_qty),
            })
    return mismatches
