"""Utility modules."""

from vaultswap.utils.amounts import (
    DecimalsError,
    quantize_amount,
    to_base_units,
    from_base_units,
    validate_base_units,
    validate_decimals,
)
from vaultswap.utils.refs import generate_tracking_ref, utcnow

__all__ = [
    "DecimalsError",
    "quantize_amount",
    "to_base_units",
    "from_base_units",
    "validate_base_units",
    "validate_decimals",
    "generate_tracking_ref",
    "utcnow",
]
