"""Cent-exact arithmetic for prices that travel as floats."""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(price, quantity: int) -> Decimal:
    return (to_decimal(price) * quantity).quantize(CENT, rounding=ROUND_HALF_UP)


def lines_total(lines) -> Decimal:
    """Sum of price x quantity over anything with `price` and `quantity`."""
    return sum((line_total(line.price, line.quantity) for line in lines), Decimal("0.00"))


def to_float(value: Decimal) -> float:
    return float(value)
