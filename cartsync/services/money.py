"""
Money Utilities - Safe Decimal operations for monetary values.

Avoids float precision issues by using Decimal throughout.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

Number = Union[str, int, float, Decimal]

# Default precision for money operations (2 decimal places)
MONEY_PRECISION = Decimal("0.01")

# Precision for integer currencies
INTEGER_PRECISION = Decimal("1")

CURRENCY_SYMBOLS = {
    "INR": "₹",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "RUB": "₽",
}

# Currencies displayed without minor units
INTEGER_CURRENCIES = frozenset({"RUB", "JPY"})

# Currencies whose symbol goes before the amount
PREFIX_SYMBOL_CURRENCIES = frozenset({"INR", "USD", "EUR", "GBP"})


def to_decimal(value: Union[Number, None]) -> Decimal:
    """
    Convert any value to Decimal safely.

    Args:
        value: Value to convert (str, int, float, Decimal, or None)

    Returns:
        Decimal representation of the value, or Decimal("0") if None/invalid
    """
    if value is None:
        return Decimal("0")

    if isinstance(value, Decimal):
        return value

    try:
        if isinstance(value, float):
            # Via str() so 0.1 stays 0.1
            return Decimal(str(value))
        return Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")


def parse_decimal(value: Union[Number, None]) -> Decimal:
    """
    Strict variant of to_decimal for validation boundaries.

    Raises:
        ValueError: if the value is missing, not numeric, or not finite
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"Not a number: {value!r}") from None
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


def round_money(value: Number, to_int: bool = False) -> Decimal:
    """
    Round monetary value to appropriate precision.

    Args:
        value: Value to round
        to_int: If True, round to integer

    Returns:
        Rounded Decimal value
    """
    decimal_value = to_decimal(value)
    precision = INTEGER_PRECISION if to_int else MONEY_PRECISION
    return decimal_value.quantize(precision, rounding=ROUND_HALF_UP)


def format_money(value: Number, currency: str = "INR") -> str:
    """
    Format monetary value with currency symbol.

    >>> format_money(Decimal("240"))
    '₹240.00'
    """
    decimal_value = to_decimal(value)
    symbol = CURRENCY_SYMBOLS.get(currency, currency)

    if currency in INTEGER_CURRENCIES:
        formatted = f"{int(round_money(decimal_value, to_int=True)):,}"
    else:
        formatted = f"{round_money(decimal_value):,.2f}"

    if currency in PREFIX_SYMBOL_CURRENCIES:
        return f"{symbol}{formatted}"
    return f"{formatted} {symbol}"


def to_float(value: Number) -> float:
    """
    Convert Decimal to float for JSON payloads.

    Use only at boundaries, not for internal calculations.
    """
    return float(to_decimal(value))


def subtract(a: Number, b: Number) -> Decimal:
    """Safe subtraction of monetary values."""
    return to_decimal(a) - to_decimal(b)


def multiply(value: Number, factor: Number) -> Decimal:
    """Safe multiplication of monetary value by a factor."""
    return to_decimal(value) * to_decimal(factor)


def divide(value: Number, divisor: Number) -> Decimal:
    """Safe division of monetary value."""
    d = to_decimal(divisor)
    if d == 0:
        return Decimal("0")
    return to_decimal(value) / d
