"""Mapping of settlement errors to HTTP responses."""

from fastapi import HTTPException

from vaultswap.errors import (
    BridgeUnavailable,
    DuplicatePendingOperation,
    DuplicatePendingOrder,
    InsufficientFunds,
    OrderNotFound,
    QuoteUnavailable,
    SettlementError,
    UnauthorizedWallet,
    ValidationError,
)

STATUS_CODES = {
    ValidationError: 400,
    UnauthorizedWallet: 403,
    OrderNotFound: 404,
    DuplicatePendingOrder: 409,
    DuplicatePendingOperation: 409,
    InsufficientFunds: 422,
    QuoteUnavailable: 503,
    BridgeUnavailable: 503,
}


def to_http_error(error: SettlementError) -> HTTPException:
    """Build the HTTPException for a rejected request."""
    for error_type, status_code in STATUS_CODES.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))
