"""SimpleSwap bridge gateway (v3 API)."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from vaultswap.gateways.base import (
    BridgeGateway,
    BridgeGatewayError,
    Exchange,
    ExchangeState,
    ExchangeStatus,
)

logger = logging.getLogger(__name__)

# Ticker -> network used on SimpleSwap
NETWORKS = {
    "sol": "sol",
    "trx": "trx",
}

_CREATE_ERRORS = {
    400: "Invalid routing parameters. Please check amount and addresses.",
    401: "Bridge authentication failed",
    422: "Amount is outside allowed range for this route",
}


def _to_decimal(value) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class SimpleSwapGateway(BridgeGateway):
    """Bridge gateway backed by SimpleSwap exchanges."""

    def __init__(self, api_url: str, api_key: str, timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "simpleswap"

    def _headers(self) -> dict:
        return {"x-api-key": self.api_key, "Accept": "application/json"}

    async def create_exchange(
        self,
        from_asset: str,
        to_asset: str,
        amount: Decimal,
        address_to: str,
    ) -> Exchange:
        if not self.api_key:
            raise BridgeGatewayError("Bridge gateway not configured")

        ticker_from, ticker_to = from_asset.lower(), to_asset.lower()
        body = {
            "fixed": False,
            "tickerFrom": ticker_from,
            "tickerTo": ticker_to,
            "networkFrom": NETWORKS.get(ticker_from, ticker_from),
            "networkTo": NETWORKS.get(ticker_to, ticker_to),
            "amount": str(amount),
            "addressTo": address_to,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_url}/v3/exchanges", json=body, headers=self._headers()
                )
        except httpx.HTTPError as e:
            logger.error(f"SimpleSwap create exchange failed: {e}")
            raise BridgeGatewayError("Unable to connect to bridge gateway") from e

        if response.status_code >= 400:
            logger.error(f"SimpleSwap error {response.status_code}: {response.text}")
            raise BridgeGatewayError(
                _CREATE_ERRORS.get(
                    response.status_code, "Bridge temporarily unavailable. Please try again."
                )
            )

        data = response.json()
        result = data.get("result") or data
        exchange_id = result.get("publicId") or result.get("id")
        deposit_address = result.get("addressFrom")
        if not exchange_id or not deposit_address:
            raise BridgeGatewayError(f"Malformed exchange response: {result}")

        logger.info(
            f"SimpleSwap exchange {exchange_id} created: {amount} {from_asset} -> {to_asset}"
        )
        return Exchange(
            exchange_id=str(exchange_id),
            deposit_address=deposit_address,
            expected_amount=_to_decimal(result.get("amountTo")),
        )

    async def get_status(self, exchange_id: str) -> ExchangeStatus:
        if not self.api_key:
            raise BridgeGatewayError("Bridge gateway not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.api_url}/v3/exchanges/{exchange_id}", headers=self._headers()
                )
        except httpx.HTTPError as e:
            logger.error(f"SimpleSwap status check for {exchange_id} failed: {e}")
            raise BridgeGatewayError("Unable to connect to bridge gateway") from e

        if response.status_code == 404:
            raise BridgeGatewayError(f"Exchange {exchange_id} not found")
        if response.status_code >= 400:
            raise BridgeGatewayError(f"Unable to check exchange status ({response.status_code})")

        data = response.json()
        result = data.get("result") or data
        try:
            status = ExchangeState(str(result.get("status", "")).lower())
        except ValueError:
            raise BridgeGatewayError(f"Unknown exchange status: {result.get('status')}") from None

        return ExchangeStatus(
            exchange_id=exchange_id,
            status=status,
            amount_received=_to_decimal(result.get("amountTo")),
            tx_from=result.get("txFrom") or None,
            tx_to=result.get("txTo") or None,
        )
