"""Amount helpers. Amounts are compared in minor units (kopecks), never as floats."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

AmountLike = Union[Decimal, str, int, float]

CENT = Decimal("0.01")


def to_decimal(value: AmountLike) -> Decimal:
    """Parse an amount; raises ValueError for anything that is not a finite number"""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount


def to_minor_units(value: AmountLike) -> int:
    """Exact minor-unit value; fractions of a kopeck are rejected rather than rounded"""
    amount = to_decimal(value)
    minor = amount * 100
    if minor != minor.to_integral_value():
        raise ValueError(f"Amount has sub-kopeck precision: {value!r}")
    return int(minor)


def quantize(value: AmountLike) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_out_sum(value: AmountLike) -> str:
    """OutSum as the payment page expects it: two decimals, dot separator"""
    return f"{quantize(value):.2f}"
