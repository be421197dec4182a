"""Gateway factory: builds the configured gateways once per process."""

from typing import Optional

from vaultswap.config import get_settings
from vaultswap.gateways.base import BridgeGateway, ChainTransfer, SwapGateway
from vaultswap.gateways.dryrun import DryRunBridgeGateway, DryRunSwapGateway, DryRunTransfer
from vaultswap.gateways.jupiter import JupiterGateway
from vaultswap.gateways.simpleswap import SimpleSwapGateway
from vaultswap.gateways.solana import SolanaTransfer
from vaultswap.gateways.tron import TronTransfer

# Singleton instances
_swap_gateway: Optional[SwapGateway] = None
_bridge_gateway: Optional[BridgeGateway] = None
_router_transfer: Optional[ChainTransfer] = None
_relay_transfer: Optional[ChainTransfer] = None


def get_swap_gateway() -> SwapGateway:
    """Get the swap gateway (Jupiter, or dry-run when DRY_RUN is set)."""
    global _swap_gateway

    if _swap_gateway is None:
        settings = get_settings()
        if settings.dry_run:
            _swap_gateway = DryRunSwapGateway()
        else:
            _swap_gateway = JupiterGateway(
                api_url=settings.jupiter_api_url,
                rpc_url=settings.sol_rpc_url,
                taker_address=settings.router_wallet_address,
                taker_secret=settings.router_wallet_secret,
            )
    return _swap_gateway


def get_bridge_gateway() -> BridgeGateway:
    """Get the bridge gateway (SimpleSwap, or dry-run when DRY_RUN is set)."""
    global _bridge_gateway

    if _bridge_gateway is None:
        settings = get_settings()
        if settings.dry_run:
            _bridge_gateway = DryRunBridgeGateway()
        else:
            _bridge_gateway = SimpleSwapGateway(
                api_url=settings.simpleswap_api_url,
                api_key=settings.simpleswap_api_key,
            )
    return _bridge_gateway


def get_router_transfer() -> ChainTransfer:
    """SOL transfers from the liquidity router wallet."""
    global _router_transfer

    if _router_transfer is None:
        settings = get_settings()
        if settings.dry_run:
            _router_transfer = DryRunTransfer("SOL", settings.router_wallet_address)
        else:
            _router_transfer = SolanaTransfer(
                rpc_url=settings.sol_rpc_url,
                secret_key=settings.router_wallet_secret,
                address=settings.router_wallet_address,
            )
    return _router_transfer


def get_relay_transfer() -> ChainTransfer:
    """TRX transfers from the privacy relay wallet."""
    global _relay_transfer

    if _relay_transfer is None:
        settings = get_settings()
        if settings.dry_run:
            _relay_transfer = DryRunTransfer("TRX", settings.relay_wallet_address)
        else:
            _relay_transfer = TronTransfer(
                api_url=settings.tron_api_url,
                private_key=settings.relay_wallet_secret,
                address=settings.relay_wallet_address,
                api_key=settings.tron_api_key,
            )
    return _relay_transfer


def reset_gateways() -> None:
    """Reset gateway instances (useful for testing)."""
    global _swap_gateway, _bridge_gateway, _router_transfer, _relay_transfer
    _swap_gateway = None
    _bridge_gateway = None
    _router_transfer = None
    _relay_transfer = None
