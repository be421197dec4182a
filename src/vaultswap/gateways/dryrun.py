"""Dry-run gateways for development (no real transactions)."""

import hashlib
from decimal import Decimal
from typing import Optional

from vaultswap.gateways.base import (
    BridgeGateway,
    ChainTransfer,
    Exchange,
    ExchangeState,
    ExchangeStatus,
    SwapGateway,
    SwapQuote,
)
from vaultswap.gateways.jupiter import SOL_MINT


def _fake_ref(*parts) -> str:
    return "sim" + hashlib.sha256(":".join(str(p) for p in parts).encode()).hexdigest()[:40]


class DryRunSwapGateway(SwapGateway):
    """Quotes at a fixed rate and pretends to execute."""

    def __init__(self, rate: int = 40, decimals: int = 6):
        self.rate = rate
        self.decimals = decimals
        self._executions = 0

    @property
    def name(self) -> str:
        return "dryrun"

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        only_direct_routes: bool = True,
    ) -> SwapQuote:
        # rate is tokens per SOL; SOL has 9 decimals
        scale = 10 ** (9 - self.decimals)
        if input_mint == SOL_MINT:
            out_amount = amount * self.rate // scale
        else:
            out_amount = amount * scale // self.rate
        return SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=str(amount),
            out_amount=str(out_amount),
            slippage_bps=slippage_bps,
            request_id=_fake_ref("order", input_mint, output_mint, amount),
            payload="",
        )

    async def execute(self, quote: SwapQuote) -> str:
        self._executions += 1
        return _fake_ref("swap", quote.request_id, self._executions)

    async def get_token_decimals(self, mint: str) -> int:
        return self.decimals


class DryRunBridgeGateway(BridgeGateway):
    """Creates exchanges that report finished on the first status check."""

    def __init__(self, rate: Decimal = Decimal("1")):
        self.rate = rate
        self._exchanges: dict[str, Decimal] = {}

    @property
    def name(self) -> str:
        return "dryrun"

    async def create_exchange(
        self,
        from_asset: str,
        to_asset: str,
        amount: Decimal,
        address_to: str,
    ) -> Exchange:
        exchange_id = _fake_ref("exchange", from_asset, to_asset, amount, address_to, len(self._exchanges))[:20]
        expected = amount * self.rate
        self._exchanges[exchange_id] = expected
        return Exchange(
            exchange_id=exchange_id,
            deposit_address=f"sim:{from_asset.lower()}:{exchange_id[-8:]}",
            expected_amount=expected,
        )

    async def get_status(self, exchange_id: str) -> ExchangeStatus:
        amount = self._exchanges.get(exchange_id)
        if amount is None:
            return ExchangeStatus(exchange_id=exchange_id, status=ExchangeState.EXPIRED)
        return ExchangeStatus(
            exchange_id=exchange_id,
            status=ExchangeState.FINISHED,
            amount_received=amount,
            tx_to=_fake_ref("payout", exchange_id),
        )


class DryRunTransfer(ChainTransfer):
    """Pretends to send value; balances are always zero."""

    def __init__(self, asset: str, address: str = ""):
        self._asset = asset
        self._address = address or f"sim:{asset.lower()}:system"

    @property
    def asset(self) -> str:
        return self._asset

    @property
    def address(self) -> str:
        return self._address

    async def send(self, to_address: str, amount: Decimal) -> str:
        return _fake_ref("transfer", self._asset, to_address, amount)

    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        return Decimal("0")
