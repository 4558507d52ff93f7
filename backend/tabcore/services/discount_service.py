# Overview: Discount resolution, eligibility checks, snapshot capture and discount maintenance.

"""
Resolution rules (authoritative)

- Candidates: status='Active', same business, starts_at <= now <= ends_at.
- Order scope: any Order-scope candidate.
- Line scope: Line-scope candidates with a DiscountEligibility row for the catalog item.
- Pick: newest starts_at, then highest id (most recently created) on ties.
  Repeated resolution against unchanged data returns the same discount.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import CatalogItem, Discount, DiscountEligibility
from ..models.discounts import (
    DISCOUNT_SCOPE_LINE,
    DISCOUNT_SCOPE_ORDER,
    DISCOUNT_TYPE_PERCENT,
    VALID_DISCOUNT_SCOPES,
    VALID_DISCOUNT_TYPES,
)
from ..money import to_decimal
from ..snapshots import DEFAULT_SNAPSHOT_FORMAT, DiscountSnapshot, SnapshotFormat, dump_discount_snapshot
from tabcore.time_utils import utcnow, as_utc_naive
from .concurrency import run_with_retry


def _active_in_window(business_id: int, scope: str, now: datetime):
    return db.session.query(Discount).filter(
        Discount.business_id == business_id,
        Discount.status == "Active",
        Discount.scope == scope,
        Discount.starts_at <= now,
        Discount.ends_at >= now,
    )


def _newest_first(query):
    return query.order_by(Discount.starts_at.desc(), Discount.id.desc())


def _eligible_for(query, catalog_item_id: int):
    return query.filter(
        Discount.eligibilities.any(DiscountEligibility.catalog_item_id == catalog_item_id)
    )


# =============================================================================
# RESOLUTION
# =============================================================================

def get_newest_order_discount(business_id: int, now: datetime | None = None) -> Discount | None:
    now = as_utc_naive(now) or utcnow()
    return _newest_first(_active_in_window(business_id, DISCOUNT_SCOPE_ORDER, now)).first()


def get_newest_line_discount_for_item(
    business_id: int,
    catalog_item_id: int,
    now: datetime | None = None,
) -> Discount | None:
    now = as_utc_naive(now) or utcnow()
    query = _eligible_for(_active_in_window(business_id, DISCOUNT_SCOPE_LINE, now), catalog_item_id)
    return _newest_first(query).first()


def ensure_order_discount_eligible(
    business_id: int,
    discount_id: int,
    now: datetime | None = None,
) -> Discount:
    """Re-validate an explicitly chosen order-level discount."""
    now = as_utc_naive(now) or utcnow()
    discount = (
        _active_in_window(business_id, DISCOUNT_SCOPE_ORDER, now)
        .filter(Discount.id == discount_id)
        .first()
    )
    if discount is None:
        raise InvalidStateError(
            "Order-level discount is not eligible",
            details={"discount_id": discount_id},
        )
    return discount


def ensure_line_discount_eligible(
    business_id: int,
    discount_id: int,
    catalog_item_id: int,
    now: datetime | None = None,
) -> Discount:
    """Re-validate an explicitly chosen line discount against the line's catalog item."""
    now = as_utc_naive(now) or utcnow()

    item_exists = (
        db.session.query(CatalogItem.id)
        .filter_by(id=catalog_item_id, business_id=business_id)
        .first()
    )
    if item_exists is None:
        raise NotFoundError("Catalog item not found for this business")

    discount = _eligible_for(
        _active_in_window(business_id, DISCOUNT_SCOPE_LINE, now).filter(Discount.id == discount_id),
        catalog_item_id,
    ).first()
    if discount is None:
        raise InvalidStateError(
            "Discount is not eligible for this item",
            details={"discount_id": discount_id, "catalog_item_id": catalog_item_id},
        )
    return discount


# =============================================================================
# SNAPSHOTS
# =============================================================================

def make_order_discount_snapshot(
    discount: Discount,
    captured_at: datetime | None = None,
    fmt: SnapshotFormat = DEFAULT_SNAPSHOT_FORMAT,
) -> str:
    return dump_discount_snapshot(
        DiscountSnapshot(
            discount_id=discount.id,
            code=discount.code,
            type=discount.type,
            scope=discount.scope,
            value=Decimal(discount.value),
            valid_from=discount.starts_at,
            valid_to=discount.ends_at,
            captured_at_utc=as_utc_naive(captured_at) or utcnow(),
        ),
        fmt,
    )


def make_line_discount_snapshot(
    discount: Discount,
    catalog_item_id: int,
    captured_at: datetime | None = None,
    fmt: SnapshotFormat = DEFAULT_SNAPSHOT_FORMAT,
) -> str:
    return dump_discount_snapshot(
        DiscountSnapshot(
            discount_id=discount.id,
            code=discount.code,
            type=discount.type,
            scope=discount.scope,
            value=Decimal(discount.value),
            valid_from=discount.starts_at,
            valid_to=discount.ends_at,
            captured_at_utc=as_utc_naive(captured_at) or utcnow(),
            catalog_item_id=catalog_item_id,
        ),
        fmt,
    )


# =============================================================================
# MAINTENANCE
# =============================================================================

def get_discount(business_id: int, discount_id: int) -> Discount:
    discount = db.session.query(Discount).filter_by(id=discount_id, business_id=business_id).first()
    if discount is None:
        raise NotFoundError("Discount not found")
    return discount


def create_discount(
    business_id: int,
    *,
    code: str,
    discount_type: str,
    scope: str,
    value,
    starts_at: datetime,
    ends_at: datetime,
    eligible_catalog_item_ids: list[int] | None = None,
    status: str = "Active",
) -> Discount:
    """
    Create a discount. Code must be unique within the business, ignoring case.

    Line-scope discounts need at least one eligible catalog item; Order-scope
    discounts must not have any.
    """
    code = (code or "").strip()
    if not code:
        raise ValidationError("code is required")
    if discount_type not in VALID_DISCOUNT_TYPES:
        raise ValidationError(f"Invalid discount type: {discount_type}. Must be one of {list(VALID_DISCOUNT_TYPES)}")
    if scope not in VALID_DISCOUNT_SCOPES:
        raise ValidationError(f"Invalid discount scope: {scope}. Must be one of {list(VALID_DISCOUNT_SCOPES)}")

    value = to_decimal(value, "value")
    if value <= 0:
        raise ValidationError("value must be positive")
    if discount_type == DISCOUNT_TYPE_PERCENT and value > 100:
        raise ValidationError("Percent discount cannot exceed 100")

    starts_at = as_utc_naive(starts_at)
    ends_at = as_utc_naive(ends_at)
    if starts_at is None or ends_at is None or ends_at < starts_at:
        raise ValidationError("ends_at must not be before starts_at")

    item_ids = list(dict.fromkeys(eligible_catalog_item_ids or []))
    if scope == DISCOUNT_SCOPE_LINE and not item_ids:
        raise ValidationError("Line discounts require eligible catalog items")
    if scope == DISCOUNT_SCOPE_ORDER and item_ids:
        raise ValidationError("Order discounts cannot have eligible catalog items")

    def _op():
        duplicate = (
            db.session.query(Discount.id)
            .filter(Discount.business_id == business_id, func.lower(Discount.code) == code.lower())
            .first()
        )
        if duplicate is not None:
            raise InvalidStateError("Discount code already exists", details={"code": code})

        _ensure_catalog_items_in_business(business_id, item_ids)

        discount = Discount(
            business_id=business_id,
            code=code,
            type=discount_type,
            scope=scope,
            value=value,
            starts_at=starts_at,
            ends_at=ends_at,
            status=status,
        )
        db.session.add(discount)
        db.session.flush()

        for item_id in item_ids:
            db.session.add(DiscountEligibility(discount_id=discount.id, catalog_item_id=item_id))

        db.session.commit()
        return discount

    return run_with_retry(_op)


def add_eligibility(business_id: int, discount_id: int, catalog_item_id: int) -> DiscountEligibility:
    def _op():
        discount = get_discount(business_id, discount_id)
        if discount.scope != DISCOUNT_SCOPE_LINE:
            raise InvalidStateError("Only Line discounts have eligible items")

        _ensure_catalog_items_in_business(business_id, [catalog_item_id])

        existing = db.session.get(DiscountEligibility, (discount_id, catalog_item_id))
        if existing is not None:
            return existing

        row = DiscountEligibility(discount_id=discount_id, catalog_item_id=catalog_item_id)
        db.session.add(row)
        db.session.commit()
        return row

    return run_with_retry(_op)


def deactivate_discount(business_id: int, discount_id: int) -> Discount:
    """Idempotent. Existing snapshots keep the discount's terms."""
    def _op():
        discount = get_discount(business_id, discount_id)
        if discount.status != "Inactive":
            discount.status = "Inactive"
            db.session.commit()
        return discount

    return run_with_retry(_op)


def _ensure_catalog_items_in_business(business_id: int, item_ids: list[int]) -> None:
    if not item_ids:
        return
    found = {
        row.id
        for row in db.session.query(CatalogItem.id)
        .filter(CatalogItem.business_id == business_id, CatalogItem.id.in_(item_ids))
        .all()
    }
    missing = [i for i in item_ids if i not in found]
    if missing:
        raise NotFoundError("Catalog item not found for this business", details={"catalog_item_ids": missing})
