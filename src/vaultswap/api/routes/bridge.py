"""Bridge deposit and withdrawal endpoints."""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from vaultswap.api.errors import to_http_error
from vaultswap.api.routes.orders import require_owner
from vaultswap.errors import SettlementError
from vaultswap.services.bridge import BridgeOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bridge")


def get_bridge_orchestrator() -> BridgeOrchestrator:
    return BridgeOrchestrator()


class DepositRequest(BaseModel):
    """Deposit SOL into a wallet balance."""

    wallet_id: int = Field(..., gt=0)
    amount: str = Field(..., description="SOL amount the user will send")


class WithdrawalRequest(BaseModel):
    """Pay SOL out of a wallet balance."""

    wallet_id: int = Field(..., gt=0)
    amount: str = Field(..., description="SOL amount to withdraw")
    destination: str = Field(..., min_length=32, max_length=44, description="Solana address")


@router.post("/deposits", status_code=202)
async def initiate_deposit(
    request: DepositRequest,
    owner_id: str = Depends(require_owner),
    orchestrator: BridgeOrchestrator = Depends(get_bridge_orchestrator),
) -> dict:
    """Open a deposit. The response carries the address to fund."""
    try:
        receipt = await orchestrator.initiate_deposit(owner_id, request.wallet_id, request.amount)
    except SettlementError as e:
        logger.info(f"Deposit rejected for wallet {request.wallet_id}: {e}")
        raise to_http_error(e)
    return receipt.to_dict()


@router.post("/withdrawals", status_code=202)
async def initiate_withdrawal(
    request: WithdrawalRequest,
    owner_id: str = Depends(require_owner),
    orchestrator: BridgeOrchestrator = Depends(get_bridge_orchestrator),
) -> dict:
    """Reserve balance and start a withdrawal."""
    try:
        receipt = await orchestrator.initiate_withdrawal(
            owner_id, request.wallet_id, request.amount, request.destination
        )
    except SettlementError as e:
        logger.info(f"Withdrawal rejected for wallet {request.wallet_id}: {e}")
        raise to_http_error(e)
    return receipt.to_dict()


@router.get("/operations/{tracking_ref}")
async def get_operation(
    tracking_ref: str,
    wallet_id: int = Query(..., gt=0),
    owner_id: str = Depends(require_owner),
    orchestrator: BridgeOrchestrator = Depends(get_bridge_orchestrator),
) -> dict:
    """Look up a deposit or withdrawal by tracking reference."""
    try:
        status = await orchestrator.get_operation_status(owner_id, wallet_id, tracking_ref)
    except SettlementError as e:
        raise to_http_error(e)
    return status.to_dict()
