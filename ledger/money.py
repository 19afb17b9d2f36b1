"""Money coercion and rounding.

All amounts are Decimal. Persisted money is rounded to cents, half-up.
"""

from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

ZERO = Decimal("0")
CENT = Decimal("0.01")

# Accepted input magnitude. Totals are stored as NUMERIC(14, 2).
MAX_AMOUNT = Decimal("1e12")
MIN_AMOUNT = Decimal("1e-12")

# Wide enough to quantize any sum, product or percentage of in-range inputs
_ROUNDING = Context(prec=60, rounding=ROUND_HALF_UP)


def _parse(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return ZERO

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, float):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return ZERO
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return ZERO
    else:
        return ZERO

    if not amount.is_finite():
        return ZERO
    return amount


def to_amount(value: Any) -> Decimal:
    """
    Coerce a raw form/CSV/JSON value to a Decimal.

    None, blanks, booleans, non-numeric text, NaN and infinities all become 0,
    and so does anything at or beyond MAX_AMOUNT in size or below MIN_AMOUNT.
    Thousands separators in strings are ignored ("1,250.50" -> 1250.50).
    """
    amount = _parse(value)
    if amount and not MIN_AMOUNT <= abs(amount) < MAX_AMOUNT:
        return ZERO
    return amount


def round_money(value: Any) -> Decimal:
    """
    Round to 2 decimal places, half-up.

    Computed values (products and sums of amounts) are rounded as they are;
    only a magnitude no context could carry to cents counts as 0.
    """
    amount = _parse(value)
    if amount.adjusted() >= _ROUNDING.prec - 2:
        return ZERO
    return amount.quantize(CENT, context=_ROUNDING)
