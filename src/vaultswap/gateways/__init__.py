"""External gateway adapters."""

from vaultswap.gateways.base import (
    BridgeGateway,
    BridgeGatewayError,
    ChainTransfer,
    Exchange,
    ExchangeState,
    ExchangeStatus,
    GatewayError,
    QuoteError,
    SwapExecutionError,
    SwapGateway,
    SwapQuote,
    TransferError,
)
from vaultswap.gateways.factory import (
    get_bridge_gateway,
    get_relay_transfer,
    get_router_transfer,
    get_swap_gateway,
)

__all__ = [
    "BridgeGateway",
    "BridgeGatewayError",
    "ChainTransfer",
    "Exchange",
    "ExchangeState",
    "ExchangeStatus",
    "GatewayError",
    "QuoteError",
    "SwapExecutionError",
    "SwapGateway",
    "SwapQuote",
    "TransferError",
    "get_bridge_gateway",
    "get_relay_transfer",
    "get_router_transfer",
    "get_swap_gateway",
]
