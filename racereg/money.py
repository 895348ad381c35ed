"""Explicit conversion of currency values to ``Decimal``.

Every amount that enters pricing, totals or CSV export goes through
:func:`to_decimal`. Only the types listed there are accepted.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Convert a supported amount to ``Decimal``.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.1")``.
    ``bool`` is rejected even though it is an ``int`` subclass.
    """
    if isinstance(value, bool):
        raise TypeError("bool is not a currency amount")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    raise TypeError(f"Unsupported amount type: {type(value).__name__}")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def floor_units(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_DOWN)


def format_decimal(value: Decimal) -> str:
    """Fixed-point text without exponent, independent of locale."""
    return format(value, "f")
