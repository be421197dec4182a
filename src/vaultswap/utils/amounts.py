"""Decimal amount helpers.

Every numeric value that crosses an external boundary (token decimals, quote
amounts in base units) is checked here before it is used.
"""

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Union

AMOUNT_QUANTUM = Decimal("0.000000001")


class DecimalsError(ValueError):
    """Raised when an external numeric field is not a finite non-negative integer."""


def validate_decimals(value: Any) -> int:
    """Check token decimals: a finite integer >= 0.

    Booleans and strings are rejected even when they look numeric, since a
    decimals field that is not a plain number means the metadata is corrupt.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise DecimalsError(f"decimals must be a number, got {type(value).__name__}")
    if isinstance(value, (float, Decimal)):
        if not Decimal(value).is_finite():
            raise DecimalsError(f"decimals must be finite, got {value}")
        if Decimal(value) != Decimal(value).to_integral_value():
            raise DecimalsError(f"decimals must be an integer, got {value}")
        value = int(value)
    if value < 0:
        raise DecimalsError(f"decimals must be >= 0, got {value}")
    return value


def validate_base_units(value: Union[str, int], field: str) -> int:
    """Parse an integer amount in base units (e.g. lamports)."""
    if isinstance(value, bool):
        raise DecimalsError(f"{field} must be an integer, got bool")
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        raise DecimalsError(f"{field} is not numeric: {value!r}") from None
    if not parsed.is_finite():
        raise DecimalsError(f"{field} must be finite, got {value!r}")
    if parsed != parsed.to_integral_value():
        raise DecimalsError(f"{field} must be an integer, got {value!r}")
    if parsed < 0:
        raise DecimalsError(f"{field} must be >= 0, got {value!r}")
    return int(parsed)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a display amount to integer base units, rounding down."""
    return int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


def from_base_units(units: int, decimals: int) -> Decimal:
    """Convert integer base units to a display amount."""
    return quantize_amount(Decimal(units) / (Decimal(10) ** decimals))


def quantize_amount(amount: Decimal) -> Decimal:
    """Round an amount down to the ledger's 9 decimal places."""
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
