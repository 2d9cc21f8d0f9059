# clinic_core/billing/money.py
"""
Decimal-only helpers for currency amounts.

Amounts are always 2 fractional digits. Values coming from JSON / forms are
parsed through str() so a float never contributes its binary representation.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from rest_framework.exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MONEY_MIN = Decimal("0.01")
MONEY_MAX = Decimal("999999.99")

# Largest total an invoice column can hold (DecimalField(12, 2)).
INVOICE_TOTAL_MAX = Decimal("9999999999.99")

# Half a cent: anything closer to zero than this counts as settled.
MONEY_EPSILON = Decimal("0.005")


def to_money(value, field: str = "amount") -> Decimal:
    """
    Accepts Decimal / str / int / float and converts to Decimal safely.
    Raises ValidationError for invalid values. Does not round.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError({field: "A decimal amount is required."})
    if isinstance(value, Decimal):
        dec = value
    else:
        try:
            dec = Decimal(str(value).strip())
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError({field: "Invalid decimal value."})

    if not dec.is_finite():
        raise ValidationError({field: "Invalid decimal value."})
    return dec


def round2(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def has_at_most_two_places(value: Decimal) -> bool:
    exponent = value.normalize().as_tuple().exponent
    return not isinstance(exponent, int) or exponent >= -2


def validate_money(
    value,
    *,
    field: str = "amount",
    min_value: Decimal = MONEY_MIN,
    max_value: Decimal = MONEY_MAX,
) -> Decimal:
    """
    Parse + range/precision check. Returns the value quantized to cents.
    """
    dec = to_money(value, field)

    if not has_at_most_two_places(dec):
        raise ValidationError({field: "Amount can have maximum 2 decimal places."})
    if dec < min_value or dec > max_value:
        raise ValidationError({field: f"Amount must be between {min_value} and {max_value}."})

    return round2(dec)


def money_sum(values: Iterable) -> Decimal:
    return round2(sum((Decimal(v) for v in values), ZERO))


def line_total(quantity: int, unit_price: Decimal) -> Decimal:
    return round2(Decimal(quantity) * Decimal(unit_price))


def is_settled(remaining: Decimal) -> bool:
    return abs(Decimal(remaining)) < MONEY_EPSILON
