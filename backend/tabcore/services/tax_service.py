# Overview: Tax rate resolution for order line snapshots.

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from ..extensions import db
from ..models import TaxRule
from tabcore.time_utils import utcnow, as_utc_naive


def find_tax_rule(country_code: str, tax_class: str, now: datetime | None = None) -> TaxRule | None:
    """
    Rule in force for (country, tax class) at `now`.

    Among rules whose window contains now (inclusive on both ends), the latest
    valid_from wins; ties fall back to the highest id so the pick is stable.
    """
    now = as_utc_naive(now) or utcnow()
    return (
        db.session.query(TaxRule)
        .filter(
            TaxRule.country_code == country_code,
            TaxRule.tax_class == tax_class,
            TaxRule.valid_from <= now,
            TaxRule.valid_to >= now,
        )
        .order_by(TaxRule.valid_from.desc(), TaxRule.id.desc())
        .first()
    )


def resolve_tax_rate_pct(country_code: str, tax_class: str, now: datetime | None = None) -> Decimal:
    """Applicable rate in percent, or 0 when no rule matches."""
    rule = find_tax_rule(country_code, tax_class, now)
    if rule is None:
        return Decimal("0")
    return Decimal(rule.rate_percent)
