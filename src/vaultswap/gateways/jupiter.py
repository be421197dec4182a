"""Jupiter swap gateway.

Uses the Ultra order/execute flow: the order call returns a quote together
with an unsigned transaction for the taker wallet, which is signed locally
and submitted back through the execute call.
"""

import logging
from typing import Optional

import httpx

from vaultswap.gateways.base import (
    QuoteError,
    SwapExecutionError,
    SwapGateway,
    SwapQuote,
)
from vaultswap.gateways.solana import SolanaRpc, parse_secret_key, sign_serialized_transaction

logger = logging.getLogger(__name__)

SOL_MINT = "So11111111111111111111111111111111111111112"


class JupiterGateway(SwapGateway):
    """Swap gateway backed by Jupiter Ultra."""

    def __init__(
        self,
        api_url: str,
        rpc_url: str,
        taker_address: str,
        taker_secret: Optional[str],
        timeout: float = 30.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.rpc = SolanaRpc(rpc_url)
        self.taker_address = taker_address
        self._taker_secret = taker_secret
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "jupiter"

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        only_direct_routes: bool = True,
    ) -> SwapQuote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
        }
        if self.taker_address:
            params["taker"] = self.taker_address
        if only_direct_routes:
            params["onlyDirectRoutes"] = "true"

        logger.info(f"Fetching Jupiter order: {amount} {input_mint} -> {output_mint}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.api_url}/ultra/v1/order", params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Jupiter order failed: {e}")
            raise QuoteError(f"Jupiter order failed: {e}") from e

        if not data.get("outAmount"):
            raise QuoteError(f"Jupiter returned no route: {data.get('error') or data}")

        quote = SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=str(data.get("inAmount") or amount),
            out_amount=str(data["outAmount"]),
            slippage_bps=slippage_bps,
            price_impact_pct=str(data.get("priceImpactPct", "0")),
            request_id=data.get("requestId"),
            payload=data.get("transaction"),
        )
        logger.info(
            f"Jupiter order: {quote.in_amount} -> {quote.out_amount} "
            f"(impact: {quote.price_impact_pct}%)"
        )
        return quote

    async def execute(self, quote: SwapQuote) -> str:
        if not quote.payload:
            raise SwapExecutionError("Quote has no transaction - taker wallet was not set")
        if not quote.request_id:
            raise SwapExecutionError("Quote has no request id")
        if not self._taker_secret:
            raise SwapExecutionError("Taker secret key not configured")

        try:
            signed = sign_serialized_transaction(quote.payload, parse_secret_key(self._taker_secret))
        except ValueError as e:
            raise SwapExecutionError(f"Could not sign swap transaction: {e}") from e

        try:
            async with httpx.AsyncClient(timeout=120.0) as client:
                response = await client.post(
                    f"{self.api_url}/ultra/v1/execute",
                    json={"signedTransaction": signed, "requestId": quote.request_id},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Jupiter execute failed: {e}")
            raise SwapExecutionError(f"Jupiter execute failed: {e}") from e

        if data.get("status") == "Failed" or not data.get("signature"):
            raise SwapExecutionError(
                f"Jupiter execute rejected: {data.get('error') or data.get('code') or data}"
            )

        signature = data["signature"]
        logger.info(f"Swap executed via Jupiter: {signature}")
        return signature

    async def get_token_decimals(self, mint: str) -> int:
        if mint == SOL_MINT:
            return 9
        try:
            return await self.rpc.get_mint_decimals(mint)
        except (httpx.HTTPError, RuntimeError, KeyError) as e:
            logger.error(f"Failed to fetch decimals for {mint}: {e}")
            raise QuoteError(f"Token metadata unavailable for {mint}") from e
