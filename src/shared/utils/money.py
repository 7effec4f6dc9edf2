from decimal import ROUND_HALF_DOWN, ROUND_HALF_UP, Decimal
from typing import Union

# Type alias for money values
Money = Decimal


def round_money(value: Union[Decimal, float, int, str]) -> Decimal:
    """
    Round monetary value to 2 decimal places using ROUND_HALF_UP.

    Examples:
        >>> round_money(10.125)
        Decimal('10.13')
        >>> round_money("12.5")
        Decimal('12.50')
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value < 0:
        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_DOWN)
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def line_value(quantity: int, unit_price: Union[Decimal, float, int, str, None]) -> Decimal:
    """Value of ``quantity`` units at ``unit_price`` (missing price counts as zero)."""
    if unit_price is None:
        return Decimal("0.00")
    return round_money(Decimal(quantity) * round_money(unit_price))
