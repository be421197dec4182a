"""Order reservation: quote, then reserve funds and enqueue a swap job atomically."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vaultswap.config import Settings, get_settings
from vaultswap.errors import (
    DuplicatePendingOrder,
    InsufficientFunds,
    OrderNotFound,
    QuoteUnavailable,
    UnauthorizedWallet,
    ValidationError,
)
from vaultswap.gateways.base import GatewayError, SwapGateway, SwapQuote
from vaultswap.gateways.factory import get_swap_gateway
from vaultswap.gateways.jupiter import SOL_MINT
from vaultswap.ledger.database import atomic, get_session_factory
from vaultswap.ledger.models import SwapDirection, TransactionKind, Wallet
from vaultswap.ledger.repository import LedgerRepository
from vaultswap.ledger.snapshots import FullRestore, PartialRestore, dump_snapshot
from vaultswap.utils.amounts import (
    DecimalsError,
    from_base_units,
    quantize_amount,
    to_base_units,
    validate_base_units,
    validate_decimals,
)

logger = logging.getLogger(__name__)

SOL_DECIMALS = 9


@dataclass
class OrderReceipt:
    """Returned to the caller as soon as funds are reserved."""

    tracking_ref: str
    direction: SwapDirection
    asset: str
    amount: Decimal
    estimated_output: Decimal
    status: str

    def to_dict(self) -> dict:
        return {
            "tracking_ref": self.tracking_ref,
            "direction": self.direction.value,
            "asset": self.asset,
            "amount": str(self.amount),
            "estimated_output": str(self.estimated_output),
            "status": self.status,
        }


@dataclass
class OrderStatus:
    """Current state of an order, looked up by tracking reference."""

    tracking_ref: str
    direction: str
    asset: str
    symbol: Optional[str]
    amount: Decimal
    settlement_value: Decimal
    status: str
    job_status: Optional[str]
    settlement_reference: Optional[str]
    failure_reason: Optional[str]
    realized_pnl: Optional[Decimal]
    created_at: Optional[datetime]

    def to_dict(self) -> dict:
        return {
            "tracking_ref": self.tracking_ref,
            "direction": self.direction,
            "asset": self.asset,
            "symbol": self.symbol,
            "amount": str(self.amount),
            "settlement_value": str(self.settlement_value),
            "status": self.status,
            "job_status": self.job_status,
            "settlement_reference": self.settlement_reference,
            "failure_reason": self.failure_reason,
            "realized_pnl": str(self.realized_pnl) if self.realized_pnl is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def parse_amount(value) -> Decimal:
    """Parse a user-supplied amount: finite and strictly positive."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Amount must be a positive number, got {value!r}")
    return amount


async def authorize_wallet(repo: LedgerRepository, owner_ref: str, wallet_id: int) -> Wallet:
    """Load a wallet the caller owns, or raise ``UnauthorizedWallet``."""
    wallet = await repo.get_wallet(wallet_id)
    if wallet is None or wallet.owner_ref != owner_ref:
        raise UnauthorizedWallet("Wallet not found for this account")
    if not wallet.is_active:
        raise UnauthorizedWallet("Wallet is disabled")
    return wallet


class ReservationService:
    """Places buy and sell orders against a wallet."""

    def __init__(
        self,
        swap_gateway: Optional[SwapGateway] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        self.gateway = swap_gateway or get_swap_gateway()
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()

    async def place_order(
        self,
        owner_ref: str,
        wallet_id: int,
        asset: str,
        direction: SwapDirection,
        amount,
        symbol: Optional[str] = None,
        notify_chat_id: Optional[int] = None,
    ) -> OrderReceipt:
        """Reserve funds for a swap and enqueue it.

        For a buy, ``amount`` is the SOL to spend; for a sell, the tokens to
        sell. No state is mutated unless the whole reservation succeeds.

        Raises:
            ValidationError, UnauthorizedWallet, InsufficientFunds,
            DuplicatePendingOrder, QuoteUnavailable
        """
        try:
            direction = SwapDirection(direction)
        except ValueError:
            raise ValidationError(f"Unknown order direction: {direction!r}") from None
        amount = parse_amount(amount)
        if asset == SOL_MINT:
            raise ValidationError("Cannot swap SOL against itself")

        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            await authorize_wallet(repo, owner_ref, wallet_id)
            if direction == SwapDirection.SELL:
                holding = await repo.get_holding(wallet_id, asset)
                self._check_sellable(holding, amount, symbol or asset)

        decimals = await self._token_decimals(asset)

        if direction == SwapDirection.BUY:
            return await self._place_buy(wallet_id, asset, symbol, decimals, amount, notify_chat_id)
        return await self._place_sell(wallet_id, asset, symbol, decimals, amount, notify_chat_id)

    @staticmethod
    def _check_sellable(holding, amount: Decimal, label: str) -> None:
        if holding is None or (holding.amount <= 0 and holding.pending_amount <= 0):
            raise InsufficientFunds(f"You don't hold any {label}")
        if holding.amount <= 0:
            raise InsufficientFunds(f"Your {label} purchase is still confirming. Try again shortly.")
        if holding.amount < amount:
            raise InsufficientFunds(
                f"Insufficient {label}: have {holding.amount}, need {amount}"
            )

    async def _token_decimals(self, asset: str) -> int:
        try:
            raw = await self.gateway.get_token_decimals(asset)
        except GatewayError as e:
            raise QuoteUnavailable(f"Token metadata unavailable: {e}") from e
        try:
            return validate_decimals(raw)
        except DecimalsError as e:
            raise ValidationError(f"Invalid token decimals for {asset}: {e}") from e

    async def _quote(self, input_mint: str, output_mint: str, amount: int) -> tuple[SwapQuote, int]:
        try:
            quote = await self.gateway.get_quote(
                input_mint,
                output_mint,
                amount,
                slippage_bps=self.settings.slippage_bps,
                only_direct_routes=self.settings.only_direct_routes,
            )
            out_units = validate_base_units(quote.out_amount, "outAmount")
            validate_base_units(quote.in_amount, "inAmount")
        except (GatewayError, DecimalsError) as e:
            logger.warning(f"Quote {input_mint} -> {output_mint} unavailable: {e}")
            raise QuoteUnavailable(f"Unable to get a quote: {e}") from e
        if out_units <= 0:
            raise QuoteUnavailable("No route returns a positive amount")
        return quote, out_units

    async def _place_buy(
        self,
        wallet_id: int,
        asset: str,
        symbol: Optional[str],
        decimals: int,
        amount: Decimal,
        notify_chat_id: Optional[int],
    ) -> OrderReceipt:
        lamports = to_base_units(amount, SOL_DECIMALS)
        if lamports <= 0:
            raise ValidationError("Amount is below one lamport")
        spend = from_base_units(lamports, SOL_DECIMALS)

        quote, out_units = await self._quote(SOL_MINT, asset, lamports)
        expected = from_base_units(out_units, decimals)

        try:
            async with atomic(self.session_factory) as session:
                repo = LedgerRepository(session)
                tx = await repo.create_transaction(
                    wallet_id,
                    TransactionKind.BUY,
                    asset,
                    amount=expected,
                    settlement_value=spend,
                    symbol=symbol,
                )
                if not await repo.debit_balance(wallet_id, spend):
                    raise InsufficientFunds(f"Insufficient SOL balance for {spend} SOL")

                snapshot = PartialRestore(asset=asset, balance_refund=spend, pending_amount=expected)
                await repo.create_swap_job(
                    wallet_id=wallet_id,
                    transaction_id=tx.id,
                    direction=SwapDirection.BUY,
                    asset=asset,
                    symbol=symbol,
                    decimals=decimals,
                    settlement_amount=spend,
                    asset_amount=expected,
                    quote_snapshot=json.dumps(quote.to_dict()),
                    restore_snapshot=dump_snapshot(snapshot),
                    notify_chat_id=notify_chat_id,
                )
                await repo.add_pending_inbound(wallet_id, asset, symbol, expected)
                reference = tx.reference
        except IntegrityError:
            raise DuplicatePendingOrder("You already have a pending buy order") from None

        logger.info(f"Reserved buy {reference[:12]}: {spend} SOL -> ~{expected} {symbol or asset}")
        return OrderReceipt(
            tracking_ref=reference,
            direction=SwapDirection.BUY,
            asset=asset,
            amount=spend,
            estimated_output=expected,
            status="pending",
        )

    async def _place_sell(
        self,
        wallet_id: int,
        asset: str,
        symbol: Optional[str],
        decimals: int,
        amount: Decimal,
        notify_chat_id: Optional[int],
    ) -> OrderReceipt:
        units = to_base_units(amount, decimals)
        if units <= 0:
            raise ValidationError(f"Amount is below the token's smallest unit (decimals={decimals})")
        sell_amount = from_base_units(units, decimals)

        quote, out_units = await self._quote(asset, SOL_MINT, units)
        expected = from_base_units(out_units, SOL_DECIMALS)

        try:
            async with atomic(self.session_factory) as session:
                repo = LedgerRepository(session)
                holding = await repo.get_holding(wallet_id, asset, for_update=True)
                self._check_sellable(holding, sell_amount, symbol or asset)

                cost_deducted = quantize_amount(
                    holding.total_cost_basis * sell_amount / holding.amount
                )
                snapshot = FullRestore(
                    asset=asset,
                    amount=holding.amount,
                    total_cost_basis=holding.total_cost_basis,
                    average_entry_price=holding.average_entry_price,
                    amount_after=holding.amount - sell_amount,
                    cost_basis_after=holding.total_cost_basis - cost_deducted,
                )
                symbol = symbol or holding.symbol

                tx = await repo.create_transaction(
                    wallet_id,
                    TransactionKind.SELL,
                    asset,
                    amount=sell_amount,
                    settlement_value=expected,
                    symbol=symbol,
                    cost_basis_at_sale=cost_deducted,
                )
                if not await repo.debit_holding(wallet_id, snapshot):
                    raise InsufficientFunds(f"Insufficient {symbol or asset} for {sell_amount}")

                await repo.create_swap_job(
                    wallet_id=wallet_id,
                    transaction_id=tx.id,
                    direction=SwapDirection.SELL,
                    asset=asset,
                    symbol=symbol,
                    decimals=decimals,
                    settlement_amount=expected,
                    asset_amount=sell_amount,
                    quote_snapshot=json.dumps(quote.to_dict()),
                    restore_snapshot=dump_snapshot(snapshot),
                    notify_chat_id=notify_chat_id,
                )
                reference = tx.reference
        except IntegrityError:
            raise DuplicatePendingOrder("You already have a pending sell order") from None

        logger.info(f"Reserved sell {reference[:12]}: {sell_amount} {symbol or asset} -> ~{expected} SOL")
        return OrderReceipt(
            tracking_ref=reference,
            direction=SwapDirection.SELL,
            asset=asset,
            amount=sell_amount,
            estimated_output=expected,
            status="pending",
        )

    async def get_order_status(self, owner_ref: str, wallet_id: int, tracking_ref: str) -> OrderStatus:
        """Look up an order by its tracking reference."""
        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            await authorize_wallet(repo, owner_ref, wallet_id)
            tx = await repo.get_transaction_by_reference(wallet_id, tracking_ref)
            if tx is None or tx.kind not in (TransactionKind.BUY, TransactionKind.SELL):
                raise OrderNotFound(f"No order with reference {tracking_ref}")
            job = await repo.get_job_for_transaction(tx.id)

        return OrderStatus(
            tracking_ref=tx.reference,
            direction=tx.kind,
            asset=tx.asset,
            symbol=tx.symbol,
            amount=tx.amount,
            settlement_value=tx.settlement_value,
            status=tx.status,
            job_status=job.status if job else None,
            settlement_reference=job.settlement_reference if job else None,
            failure_reason=job.failure_reason if job else None,
            realized_pnl=tx.realized_pnl,
            created_at=tx.created_at,
        )
