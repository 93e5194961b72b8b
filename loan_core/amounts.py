"""
Amount Handling Module

Decimal parsing, quantization and formatting for loan amounts.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union
import re

from .exceptions import InvalidAmount

# High precision for intermediate sums
getcontext().prec = 28

ZERO = Decimal('0')

AmountLike = Union[Decimal, int, str]

# Currency markers accepted in front of or behind a number, longest first
CURRENCY_SYMBOLS = ('BDT', 'Tk', '৳', '$')

# Plain decimal notation only; exponents and other letters are refused
AMOUNT_PATTERN = re.compile(r'[+-]?(\d+(\.\d*)?|\.\d+)')


def quantize_amount(value: Decimal, precision: int = 2) -> Decimal:
    """Round to the configured number of decimal places"""
    return value.quantize(Decimal('0.1') ** precision, rounding=ROUND_HALF_UP)


def _clean(value: str) -> str:
    """Drop whitespace, thousands separators and one currency marker"""
    text = re.sub(r'\s+', '', value).replace(',', '')
    for symbol in CURRENCY_SYMBOLS:
        if text.startswith(symbol):
            return text[len(symbol):]
        if text.endswith(symbol):
            return text[:-len(symbol)]
    return text


def parse_amount(value: AmountLike, precision: int = 2) -> Decimal:
    """
    Convert user input into a quantized Decimal
    
    Accepts Decimal, int or strings such as "1,250.50" or "৳ 100000".
    Floats are rejected because they cannot represent money exactly, and so
    is any string that is not a plain decimal number once whitespace,
    thousands separators and a currency marker are removed ("1e5",
    "12abc34").
    
    Raises:
        InvalidAmount: If the value cannot be converted
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmount(f"Amount must be a Decimal, int or string, got {type(value).__name__}")
    
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, str):
        if not value.strip():
            raise InvalidAmount("Amount must be a non-empty string")
        clean_value = _clean(value)
        if not AMOUNT_PATTERN.fullmatch(clean_value):
            raise InvalidAmount(f"Cannot convert '{value}' to an amount")
        amount = Decimal(clean_value)
    else:
        raise InvalidAmount(f"Unsupported amount type {type(value).__name__}")
    
    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value}")
    
    try:
        return quantize_amount(amount, precision)
    except InvalidOperation:
        raise InvalidAmount(f"Amount {value} has too many digits")


def require_positive(value: AmountLike, precision: int = 2) -> Decimal:
    """Parse an amount and reject zero or negative values"""
    amount = parse_amount(value, precision)
    if amount <= ZERO:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    return amount


def format_amount(value: Decimal, precision: int = 2) -> str:
    """Fixed-precision string used in every serialized output"""
    return f"{quantize_amount(value, precision):.{precision}f}"
