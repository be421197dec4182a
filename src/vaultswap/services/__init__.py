"""Settlement services: order reservation, swap processing and bridging."""

from vaultswap.services.bridge import BridgeOrchestrator, BridgeReceipt, OperationStatus
from vaultswap.services.reservation import (
    OrderReceipt,
    OrderStatus,
    ReservationService,
    authorize_wallet,
)
from vaultswap.services.swap_processor import SwapJobProcessor

__all__ = [
    "BridgeOrchestrator",
    "BridgeReceipt",
    "OperationStatus",
    "OrderReceipt",
    "OrderStatus",
    "ReservationService",
    "authorize_wallet",
    "SwapJobProcessor",
]
