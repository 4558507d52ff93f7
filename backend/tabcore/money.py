from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError

# Decimal's ROUND_HALF_UP rounds ties away from zero for both signs.
MONEY_PLACES = Decimal("0.01")
COST_PLACES = Decimal("0.0001")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value, field: str = "value") -> Decimal:
    """Coerce int/str/Decimal input to Decimal. Floats go through str() to avoid binary noise."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be numeric")
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite")
    return result


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def round_cost(amount: Decimal) -> Decimal:
    return amount.quantize(COST_PLACES, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    """Money amount (major units) -> integer minor units, rounded half away from zero."""
    return int(round_money(amount) * HUNDRED)


def apply_discount(amount: Decimal, discount_type: str, value: Decimal) -> Decimal:
    """
    Apply a Percent or Amount discount and clamp at zero.

    Unknown types leave the amount unchanged.
    """
    if discount_type == "Percent":
        amount = amount * (1 - value / HUNDRED)
    elif discount_type == "Amount":
        amount = amount - value
    return amount if amount > ZERO else ZERO
