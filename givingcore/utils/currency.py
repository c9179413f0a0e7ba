from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

# Provider APIs report these in whole units; everything else is in hundredths.
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND"})

_CENTS = Decimal("0.01")


def minor_unit_divisor(currency: str) -> int:
    return 1 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 100


def from_minor_units(amount: int | str | Decimal | None, currency: str) -> Decimal:
    """Convert a provider minor-unit amount to a two-place decimal.

    >>> from_minor_units(2000, "usd")
    Decimal('20.00')
    >>> from_minor_units(2000, "JPY")
    Decimal('2000.00')
    """
    value = Decimal(str(amount or 0)) / minor_unit_divisor(currency)
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal, currency: str) -> str:
    q = amount.quantize(_CENTS, rounding=ROUND_HALF_UP)
    return f"{currency.upper()} {q:,}"
