from decimal import Decimal

import pytest

from racereg.money import floor_units, format_decimal, quantize_money, to_decimal


@pytest.mark.parametrize(
    "value, expected",
    [
        (Decimal("12.50"), Decimal("12.50")),
        (7, Decimal("7")),
        (0.1, Decimal("0.1")),
        (" 3.25 ", Decimal("3.25")),
    ],
)
def test_to_decimal_accepts_supported_types(value, expected):
    assert to_decimal(value) == expected


def test_to_decimal_rejects_bool_and_unknown_types():
    with pytest.raises(TypeError):
        to_decimal(True)
    with pytest.raises(TypeError):
        to_decimal([1])


def test_to_decimal_rejects_garbage_text():
    with pytest.raises(ValueError):
        to_decimal("twelve")


def test_rounding_helpers():
    assert quantize_money(Decimal("1.005")) == Decimal("1.01")
    assert floor_units(Decimal("8499.99")) == Decimal("8499")


def test_format_decimal_has_no_exponent():
    assert format_decimal(Decimal("1E+3")) == "1000"
    assert format_decimal(Decimal("0.0000001")) == "0.0000001"
