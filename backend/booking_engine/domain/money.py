"""Integer minor-unit helpers.

Amounts are ``int`` cents everywhere. Fractions only appear transiently as
``Decimal`` inside a single line item and are collapsed with round-half-up
before the value leaves the helper.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

ONE = Decimal("1")
HUNDRED = Decimal("100")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_half_up(value: Decimal | int | float | str) -> int:
    return int(to_decimal(value).quantize(ONE, rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, percent: Decimal | int | float | str) -> int:
    """``amount_cents * percent / 100`` rounded half-up to whole cents."""
    return round_half_up(Decimal(amount_cents) * to_decimal(percent) / HUNDRED)


def multiply(amount_cents: int, *factors: int) -> int:
    total = amount_cents
    for factor in factors:
        total *= factor
    return total


def sum_cents(values: Iterable[int]) -> int:
    return sum(int(value) for value in values)


def clamp(amount_cents: int, *, floor: int = 0, ceiling: int | None = None) -> int:
    bounded = max(floor, amount_cents)
    if ceiling is not None:
        bounded = min(bounded, ceiling)
    return bounded


def require_cents(value: object, field: str = "amount_cents") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{field} must be an integer number of cents")
    return value


def format_cents(amount_cents: int, currency: str) -> str:
    sign = "-" if amount_cents < 0 else ""
    whole, cents = divmod(abs(amount_cents), 100)
    return f"{sign}{currency.upper()} {whole}.{cents:02d}"
