"""
Line pricing.

Prices are exact Decimals; rounding happens only when a value is formatted
for display (see cartsync.services.money.format_money).
"""
from decimal import Decimal
from typing import Iterable, Union

from cartsync.cart.models import CartLine
from cartsync.errors import ERROR_INVALID_DISCOUNT, InvalidDiscount
from cartsync.services.money import divide, multiply, parse_decimal, subtract, to_decimal

MIN_DISCOUNT = Decimal("0")
MAX_DISCOUNT = Decimal("100")

Numeric = Union[str, int, float, Decimal]


def validate_discount(discount_percent: Numeric) -> Decimal:
    """
    Check a discount percent against [0, 100].

    Out-of-range values are rejected, never clamped, so the write path and the
    display path cannot disagree about what a line costs.

    Raises:
        InvalidDiscount: if the value is not a number or is out of range
    """
    try:
        value = parse_decimal(discount_percent)
    except ValueError:
        raise InvalidDiscount(f"{ERROR_INVALID_DISCOUNT}, got {discount_percent!r}") from None
    if value < MIN_DISCOUNT or value > MAX_DISCOUNT:
        raise InvalidDiscount(f"{ERROR_INVALID_DISCOUNT}, got {discount_percent!r}")
    return value


def has_discount(discount_percent: Numeric) -> bool:
    return to_decimal(discount_percent) > 0


def effective_price(unit_price: Numeric, discount_percent: Numeric = 0) -> Decimal:
    """
    Unit price after the item discount.

    >>> effective_price(100, 20)
    Decimal('80.0')
    """
    discount = validate_discount(discount_percent)
    price = to_decimal(unit_price)
    if discount > 0:
        return multiply(price, subtract(Decimal("1"), divide(discount, MAX_DISCOUNT)))
    return price


def line_total(line: CartLine) -> Decimal:
    """Effective price times quantity."""
    return effective_price(line.unit_price, line.discount_percent) * line.quantity


def lines_total(lines: Iterable[CartLine]) -> Decimal:
    return sum((line_total(line) for line in lines), Decimal("0"))
