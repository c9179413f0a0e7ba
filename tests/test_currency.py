from decimal import Decimal

from givingcore.utils.currency import format_amount, from_minor_units, minor_unit_divisor


def test_two_decimal_currencies_divide_by_hundred():
    assert from_minor_units(2000, "usd") == Decimal("20.00")
    assert from_minor_units("500050", "NGN") == Decimal("5000.50")


def test_zero_decimal_currencies_are_whole_units():
    assert minor_unit_divisor("jpy") == 1
    assert from_minor_units(2000, "JPY") == Decimal("2000.00")
    assert from_minor_units(15000, "KRW") == Decimal("15000.00")


def test_missing_amount_is_zero():
    assert from_minor_units(None, "USD") == Decimal("0.00")


def test_format_amount():
    assert format_amount(Decimal("1234.5"), "usd") == "USD 1,234.50"
