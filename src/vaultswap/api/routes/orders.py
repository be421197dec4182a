"""Swap order endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from vaultswap.api.errors import to_http_error
from vaultswap.errors import SettlementError
from vaultswap.ledger.models import SwapDirection
from vaultswap.services.reservation import ReservationService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_reservation_service() -> ReservationService:
    return ReservationService()


async def require_owner(x_owner_id: Optional[str] = Header(None)) -> str:
    """Identity of the caller, set by the authenticating proxy."""
    if not x_owner_id:
        raise HTTPException(status_code=403, detail="Missing X-Owner-Id header")
    return x_owner_id


class PlaceOrderRequest(BaseModel):
    """Buy or sell order."""

    wallet_id: int = Field(..., gt=0)
    asset: str = Field(..., min_length=32, max_length=44, description="Token mint address")
    direction: str = Field(..., description="buy or sell")
    amount: str = Field(..., description="SOL to spend (buy) or tokens to sell (sell)")
    symbol: Optional[str] = Field(None, max_length=20)
    notify_chat_id: Optional[int] = None

    @field_validator("direction")
    @classmethod
    def validate_direction(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in (SwapDirection.BUY.value, SwapDirection.SELL.value):
            raise ValueError("direction must be 'buy' or 'sell'")
        return v

    @field_validator("asset")
    @classmethod
    def strip_asset(cls, v: str) -> str:
        return v.strip()


@router.post("/orders", status_code=202)
async def place_order(
    request: PlaceOrderRequest,
    owner_id: str = Depends(require_owner),
    service: ReservationService = Depends(get_reservation_service),
) -> dict:
    """Reserve funds and queue a swap. Returns a tracking reference."""
    try:
        receipt = await service.place_order(
            owner_id,
            request.wallet_id,
            request.asset,
            request.direction,
            request.amount,
            symbol=request.symbol,
            notify_chat_id=request.notify_chat_id,
        )
    except SettlementError as e:
        logger.info(f"Order rejected for wallet {request.wallet_id}: {e}")
        raise to_http_error(e)
    return receipt.to_dict()


@router.get("/orders/{tracking_ref}")
async def get_order(
    tracking_ref: str,
    wallet_id: int = Query(..., gt=0),
    owner_id: str = Depends(require_owner),
    service: ReservationService = Depends(get_reservation_service),
) -> dict:
    """Look up an order by tracking reference."""
    try:
        status = await service.get_order_status(owner_id, wallet_id, tracking_ref)
    except SettlementError as e:
        raise to_http_error(e)
    return status.to_dict()
