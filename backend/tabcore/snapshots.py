# Overview: Versioned JSON snapshots of discounts attached to orders and order lines.

"""
Discount snapshot format (version 1):

    {"version": 1, "discountId": 7, "code": "LUNCH10", "type": "Percent",
     "scope": "Line", "value": 10.0, "catalogItemId": 3,
     "validFrom": "2025-01-01T00:00:00Z", "validTo": "2025-12-31T23:59:59Z",
     "capturedAtUtc": "2025-06-01T12:00:00Z"}

catalogItemId is present only for Line scope. Snapshots written before the
version field existed are read as version 1.

The reader never raises: absent, malformed or unknown-version JSON means
"no discount".
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .time_utils import parse_iso_datetime, to_utc_z


@dataclass(frozen=True)
class SnapshotFormat:
    """Serializer settings, passed explicitly to the writer and reader."""
    version: int = 1
    separators: tuple[str, str] = (",", ":")
    ensure_ascii: bool = False


DEFAULT_SNAPSHOT_FORMAT = SnapshotFormat()


@dataclass(frozen=True)
class DiscountSnapshot:
    discount_id: int
    code: str
    type: str
    scope: str
    value: Decimal
    valid_from: Optional[datetime]
    valid_to: Optional[datetime]
    captured_at_utc: Optional[datetime]
    catalog_item_id: Optional[int] = None
    version: int = 1


def dump_discount_snapshot(snapshot: DiscountSnapshot, fmt: SnapshotFormat = DEFAULT_SNAPSHOT_FORMAT) -> str:
    payload = {
        "version": fmt.version,
        "discountId": snapshot.discount_id,
        "code": snapshot.code,
        "type": snapshot.type,
        "scope": snapshot.scope,
        "value": float(snapshot.value),
    }
    if snapshot.catalog_item_id is not None:
        payload["catalogItemId"] = snapshot.catalog_item_id
    payload["validFrom"] = to_utc_z(snapshot.valid_from)
    payload["validTo"] = to_utc_z(snapshot.valid_to)
    payload["capturedAtUtc"] = to_utc_z(snapshot.captured_at_utc)
    return json.dumps(payload, separators=fmt.separators, ensure_ascii=fmt.ensure_ascii)


def _optional_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("datetime field must be a string")
    return parse_iso_datetime(value)


def parse_discount_snapshot(
    raw: Optional[str],
    fmt: SnapshotFormat = DEFAULT_SNAPSHOT_FORMAT,
) -> Optional[DiscountSnapshot]:
    """Parse a stored snapshot; anything unusable returns None."""
    if not raw or not raw.strip():
        return None
    try:
        data = json.loads(raw, parse_float=Decimal)
        if not isinstance(data, dict):
            return None

        version = data.get("version", 1)
        if not isinstance(version, int) or isinstance(version, bool) or version < 1 or version > fmt.version:
            return None

        discount_id = data.get("discountId")
        if not isinstance(discount_id, int) or isinstance(discount_id, bool):
            return None

        discount_type = data.get("type")
        if not isinstance(discount_type, str):
            return None

        value = data.get("value")
        if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
            return None

        catalog_item_id = data.get("catalogItemId")
        if catalog_item_id is not None and (not isinstance(catalog_item_id, int) or isinstance(catalog_item_id, bool)):
            return None

        return DiscountSnapshot(
            discount_id=discount_id,
            code=str(data.get("code") or ""),
            type=discount_type,
            scope=str(data.get("scope") or ""),
            value=Decimal(value),
            valid_from=_optional_datetime(data.get("validFrom")),
            valid_to=_optional_datetime(data.get("validTo")),
            captured_at_utc=_optional_datetime(data.get("capturedAtUtc")),
            catalog_item_id=catalog_item_id,
            version=version,
        )
    except (ValueError, TypeError, ArithmeticError):
        return None
