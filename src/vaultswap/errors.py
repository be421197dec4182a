"""Errors raised by the settlement services."""


class SettlementError(Exception):
    """Base class for rejections returned to callers."""


class ValidationError(SettlementError):
    """Bad amount, bad decimals or malformed input. No state was mutated."""


class UnauthorizedWallet(SettlementError):
    """Caller does not own the wallet, or the wallet is inactive."""


class InsufficientFunds(SettlementError):
    """A guarded decrement affected zero rows."""


class DuplicatePendingOrder(SettlementError):
    """A pending order of the same kind already exists for the wallet."""


class DuplicatePendingOperation(SettlementError):
    """An in-flight bridge operation of the same direction already exists."""


class QuoteUnavailable(SettlementError):
    """The swap gateway could not quote the trade."""


class BridgeUnavailable(SettlementError):
    """The bridge gateway could not create an exchange."""


class OrderNotFound(SettlementError):
    """No order or operation matches the tracking reference."""
