"""
Utility functions for Decimal conversions at boundaries.

Raw on-chain amounts arrive as integers (or integer strings) together with a
decimals count. All internal accounting uses Decimal; floats only appear at
the JSON boundary.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, Union

ZERO = Decimal('0')


def to_decimal(value: Optional[Union[Decimal, float, str, int]]) -> Decimal:
    """
    Safely convert a number-like value to Decimal.

    Args:
        value: Decimal, float, string, int, or None to convert

    Returns:
        Decimal value, or Decimal('0') if value is None or invalid
    """
    if value is None:
        return ZERO

    if isinstance(value, Decimal):
        return value

    if isinstance(value, bool):
        return ZERO

    if isinstance(value, (int, str)):
        try:
            return Decimal(value)
        except (InvalidOperation, ValueError, TypeError):
            return ZERO

    if isinstance(value, float):
        # String conversion avoids binary float artifacts
        return Decimal(str(value))

    return ZERO


def parse_raw_amount(value: Union[int, str, None]) -> Optional[int]:
    """
    Parse a raw (base-unit) token amount.

    Returns None when the value is missing or not an integer; callers treat
    that as a malformed record.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text or not text.lstrip('-').isdigit():
            return None
        return int(text)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def normalize_raw_amount(raw_amount: int, decimals: int) -> Decimal:
    """Convert a raw base-unit amount into whole-token units: raw / 10^decimals."""
    return Decimal(raw_amount).scaleb(-decimals)


def decimal_to_float(value: Optional[Decimal]) -> Optional[float]:
    """
    Convert Decimal to float for JSON serialization.

    This should only be used at boundaries (reports, CLI output).
    """
    if value is None:
        return None
    return float(value)


def safe_decimal_divide(numerator: Decimal, denominator: Decimal, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    """
    Safely divide two Decimals, returning default if denominator is zero.

    Args:
        numerator: Decimal numerator
        denominator: Decimal denominator
        default: Value to return if denominator is zero

    Returns:
        Decimal result of division, or default if denominator is zero
    """
    if denominator == ZERO:
        return default
    return numerator / denominator
