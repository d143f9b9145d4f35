"""Decimal helpers for USD prices and USDC base units"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

USDC_DECIMALS = 6
CENT = Decimal("0.01")

Number = Union[Decimal, int, str, float]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats like 0.1 keep their printed value
    return Decimal(str(value))


def round_cents(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_usdc_units(value: Number) -> int:
    """Convert a USD amount to USDC base units (6 decimals), exactly"""
    scaled = to_decimal(value) * (Decimal(10) ** USDC_DECIMALS)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {value} has more than {USDC_DECIMALS} decimal places")
    return int(scaled)


def from_usdc_units(units: int) -> Decimal:
    return Decimal(units) / (Decimal(10) ** USDC_DECIMALS)
