"""
Decimal Arithmetic Module

Exact fixed-point arithmetic for money amounts. Every monetary computation
in the ledger and the collection reports goes through these helpers.
NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Any
import re

# Set global decimal context for financial precision
getcontext().prec = 28

NAN = Decimal('NaN')
ZERO = Decimal('0')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    INR = ("INR", 2, "₹")  # Indian Rupee, 2 decimal places

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


# Optional leading symbol or code, then digits with comma groups, fraction and exponent
_CURRENCY_PREFIX = re.compile(
    r'^(?:%s|Rs\.?)\s*' % '|'.join(
        re.escape(s) for c in Currency for s in (c.symbol, c.code)
    ),
    re.IGNORECASE
)
_NUMBER = re.compile(r'^[+-]?(?:\d+(?:,\d+)*(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$')


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a stored or submitted value to Decimal.

    None and empty strings count as zero. Anything that cannot be read as a
    number comes back as NaN so callers can detect it with is_invalid().
    """
    if value is None:
        return ZERO
    if isinstance(value, bool):
        return NAN
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # Go through str so 0.1 stays 0.1 rather than its binary expansion
        return Decimal(str(value))
    if isinstance(value, str):
        if not value.strip():
            return ZERO
        try:
            return decimal_from_string(value)
        except ValueError:
            return NAN
    return NAN


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "1100", "₹1,100.50"

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    clean_value = _CURRENCY_PREFIX.sub('', value.strip()).strip()
    if not _NUMBER.match(clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    try:
        result = Decimal(clean_value.replace(',', ''))
        # "1e3" is stored as 1000, not 1E+3
        if result.as_tuple().exponent > 0:
            result = result.quantize(Decimal(1))
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return result


def is_invalid(value: Decimal) -> bool:
    """True for NaN or infinite results"""
    return not isinstance(value, Decimal) or value.is_nan() or value.is_infinite()


def add(a: Any, b: Any) -> Decimal:
    """Exact addition; NaN if either side is not a usable number"""
    try:
        return to_decimal(a) + to_decimal(b)
    except InvalidOperation:
        return NAN


def subtract(a: Any, b: Any) -> Decimal:
    """Exact subtraction; NaN if either side is not a usable number"""
    try:
        return to_decimal(a) - to_decimal(b)
    except InvalidOperation:
        return NAN


def round_money(value: Decimal, currency: Currency = Currency.INR) -> Decimal:
    """Round half-up to the currency's minor unit"""
    return value.quantize(currency.quantum, rounding=ROUND_HALF_UP)

