"""
LEDGER MONEY ARITHMETIC

This module provides:
1. Decimal conversion for every stored numeric shape (float, int, str, Decimal128)
2. Half-up rounding to cents at storage boundaries
3. Epsilon-tolerant comparison (one cent)
4. Zero-floored decrements for shared aggregates
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
from bson import Decimal128
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
EPSILON = Decimal('0.01')
ZERO = Decimal('0')

Numeric = Union[float, int, str, Decimal, Decimal128, None]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be interpreted as money"""
    pass


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, bool):
        raise FinancialPrecisionError("Boolean is not a monetary amount")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise FinancialPrecisionError(f"Cannot parse '{value}' as an amount")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Numeric) -> Decimal:
    """Round to 2 decimal places, half-up. Call ONLY at calculation boundaries."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Numeric) -> float:
    """
    Convert back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = ZERO
    for v in values:
        result += to_decimal(v)
    return result


def safe_subtract(a: Numeric, b: Numeric) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_divide(numerator: Numeric, denominator: Numeric) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == ZERO:
        return ZERO
    return to_decimal(numerator) / denom


def amounts_equal(a: Numeric, b: Numeric) -> bool:
    """True when two amounts differ by at most one cent"""
    return abs(safe_subtract(a, b)) <= EPSILON


def is_zero(value: Numeric) -> bool:
    return abs(to_decimal(value)) < EPSILON


def floor_zero(value: Numeric) -> Decimal:
    """Clamp an aggregate at zero so out-of-order reversals cannot drift negative"""
    decimal_value = to_decimal(value)
    if decimal_value < ZERO:
        logger.debug(f"[PRECISION] Flooring negative aggregate {decimal_value} to 0")
        return ZERO
    return decimal_value


def sum_amounts(rows, field: str = "amount") -> Decimal:
    """Sum a money field over an iterable of documents"""
    return safe_add(*(row.get(field) for row in rows))


def sign_of(value: Numeric) -> int:
    decimal_value = to_decimal(value)
    if decimal_value > ZERO:
        return 1
    if decimal_value < ZERO:
        return -1
    return 0
