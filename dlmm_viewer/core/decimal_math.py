"""
Decimal helpers for token amounts and prices.

All monetary arithmetic in the project goes through Decimal; binary floats
only ever enter through to_decimal, which goes via their string form.
"""
from decimal import Decimal, InvalidOperation, getcontext
from typing import Any, Tuple

# Enough headroom for u128 intermediates and bin prices like 1.0001^-400000
getcontext().prec = 60

ZERO = Decimal(0)
ONE = Decimal(1)


def to_decimal(value: Any) -> Decimal:
    """Convert int/str/float/None to Decimal; None and "" become zero."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a numeric amount")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))
    text = str(value).strip()
    if not text:
        return ZERO
    try:
        return Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"Not a numeric amount: {value!r}") from e


def scale_amount(raw: Any, decimals: int) -> Decimal:
    """Raw integer token amount -> decimal units."""
    return to_decimal(raw).scaleb(-int(decimals))


def safe_div(numerator: Decimal, denominator: Decimal, default: Decimal = ZERO) -> Decimal:
    if denominator == 0:
        return default
    return numerator / denominator


def update_weighted_average(
    current_price: Decimal,
    current_value: Decimal,
    new_price: Decimal,
    added_value: Decimal,
) -> Tuple[Decimal, Decimal]:
    """
    Fold one (price, value) observation into a value-weighted average.

    Returns (new_average, new_total_value). Adding zero value leaves the
    average untouched, whatever new_price is.
    """
    if added_value == 0:
        return current_price, current_value
    total_value = current_value + added_value
    if total_value == 0:
        return current_price, total_value
    new_average = (
        current_price * (current_value / total_value)
        + new_price * (added_value / total_value)
    )
    return new_average, total_value
