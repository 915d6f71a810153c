"""
Currency Precision Module

ISO 4217 codes with their minor-unit precision and helpers that turn
incoming values into properly rounded Decimals. NEVER uses float for
monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    COP = ("COP", 0)  # Colombian Peso, collected in whole pesos
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    MXN = ("MXN", 2)
    PEN = ("PEN", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


Number = Union[Decimal, int, str]


def to_decimal(value: Number) -> Decimal:
    """
    Convert an int, str or Decimal to Decimal

    Raises:
        ValueError: If value is a float, NaN, infinite or cannot be parsed
    """
    if isinstance(value, float):
        raise ValueError("Monetary values must not be floats, pass a str or Decimal")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"Amount must be a finite number, got '{value}'")
    return result


def round_amount(value: Number, currency: Currency = Currency.COP) -> Decimal:
    """Round to currency precision using ROUND_HALF_UP"""
    return to_decimal(value).quantize(currency.quantum, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal, currency: Currency = Currency.COP) -> str:
    """Format for display"""
    return f"{currency.code} {value:,.{currency.precision}f}"
