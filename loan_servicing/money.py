"""
Money Arithmetic Module

Two-decimal Decimal helpers used by every calculation in the engine.
NEVER uses float for monetary values: every intermediate result is rounded
to cents with ROUND_HALF_UP so day-by-day replays cannot drift.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Iterable, Union

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')

Numeric = Union[Decimal, int, str, float, None]


def to_decimal(value: Numeric) -> Decimal:
    """Convert any numeric-ish input to Decimal (None and blanks become zero)"""
    if value is None or value == "":
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats keep their printed value, not their binary one
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid numeric value: {value!r}")


def fix2(value: Numeric) -> Decimal:
    """Round to 2 decimal places (ROUND_HALF_UP)"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sum2(values: Iterable[Numeric]) -> Decimal:
    """Sum values rounding after every addition"""
    total = ZERO
    for value in values:
        total = fix2(total + to_decimal(value))
    return total


def max0(value: Numeric) -> Decimal:
    """Floor at zero, rounded"""
    return max(fix2(value), ZERO)


def clamp(value: Numeric, low: Numeric, high: Numeric) -> Decimal:
    """Clamp a value into [low, high]"""
    value = to_decimal(value)
    return min(max(value, to_decimal(low)), to_decimal(high))


def clamp_percent(value: Numeric) -> Decimal:
    """Clamp a percentage into [0, 100]"""
    return clamp(value, 0, HUNDRED)


def normalize_rate(value: Numeric) -> Decimal:
    """
    Normalize a nominal rate to a fraction.

    Rates are stored either as a percent (60) or as a fraction (0.60);
    anything above 1 is read as a percent.
    """
    rate = to_decimal(value)
    if rate > 1:
        rate = rate / HUNDRED
    return rate


def normalize_percent(value: Numeric, default: Numeric = 0) -> Decimal:
    """
    Normalize a rate to a percentage clamped to [0, 100].

    Fractions (0 < x <= 1) are read as fractions of one hundred.
    """
    if value is None or value == "":
        return clamp_percent(default)
    pct = to_decimal(value)
    if Decimal('0') < pct <= Decimal('1'):
        pct = pct * HUNDRED
    return clamp_percent(pct)


def percent_of(amount: Numeric, pct: Numeric) -> Decimal:
    """Return fix2(amount * pct / 100)"""
    return fix2(to_decimal(amount) * to_decimal(pct) / HUNDRED)


def within_tolerance(a: Numeric, b: Numeric, tolerance: Numeric = CENT) -> bool:
    """Check two amounts differ by no more than the tolerance"""
    return abs(to_decimal(a) - to_decimal(b)) <= to_decimal(tolerance)


def money_str(value: Any) -> str:
    """Serialize an amount as a 2-decimal string"""
    return str(fix2(value))
