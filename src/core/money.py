"""
Money Arithmetic

USD amounts are Decimal values quantized to micro-dollars. The store persists
the same amounts as integer micro-USD so the balance guard is an exact integer
comparison on every engine.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

USD_QUANT = Decimal("0.000001")
MICROS_PER_USD = 1_000_000
ZERO_USD = Decimal("0.000000")

Amount = Union[Decimal, int, float, str]


def to_usd(value: Amount) -> Decimal:
    """Normalize an amount to a quantized USD Decimal."""
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        # Go through repr so 0.1 stays 0.1
        amount = Decimal(str(value))
    else:
        amount = Decimal(value)
    if not amount.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return amount.quantize(USD_QUANT, rounding=ROUND_HALF_UP)


def usd_to_micros(value: Amount) -> int:
    """Convert a USD amount to integer micro-dollars."""
    return int(to_usd(value) * MICROS_PER_USD)


def micros_to_usd(micros: int) -> Decimal:
    """Convert integer micro-dollars back to a USD Decimal."""
    return (Decimal(int(micros)) / MICROS_PER_USD).quantize(USD_QUANT)


def format_usd(value: Amount) -> str:
    """Render an amount for JSON bodies and log lines."""
    return str(to_usd(value))
