"""
Money — денежные суммы в minor units

Все цены хранятся как Decimal с квантованием до minor unit валюты
(ROUND_HALF_UP). Один и тот же area даёт одну и ту же цену в preview и
в commit: float участвует только в умножении area * rate, результат
сразу квантуется.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Final

# Количество знаков minor unit по ISO 4217 (подмножество, которое продаём)
CURRENCY_MINOR_DIGITS: Final[dict[str, int]] = {
    "GBP": 2,
    "EUR": 2,
    "USD": 2,
    "JPY": 0,
}


def minor_digits(currency: str) -> int:
    """
    Количество знаков после запятой для валюты.

    Raises:
        ValueError: Если валюта не поддерживается
    """
    code = currency.upper()
    if code not in CURRENCY_MINOR_DIGITS:
        raise ValueError(f"Unsupported currency: {currency}")
    return CURRENCY_MINOR_DIGITS[code]


def to_decimal(value: float | int | str | Decimal) -> Decimal:
    """
    Конверсия в Decimal через str, чтобы не тащить двоичный шум float.

    Examples:
        >>> to_decimal(0.1)
        Decimal('0.1')
    """
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: float | int | str | Decimal, currency: str = "GBP") -> Decimal:
    """
    Округление суммы до minor unit валюты (round-half-up).

    Examples:
        >>> quantize_money(2.005)
        Decimal('2.01')
        >>> quantize_money(30)
        Decimal('30.00')
    """
    exponent = Decimal(1).scaleb(-minor_digits(currency))
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)
