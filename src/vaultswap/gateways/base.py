"""External gateway interfaces: swaps, bridge exchanges and on-chain transfers."""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class GatewayError(Exception):
    """Base error for any external gateway failure."""


class QuoteError(GatewayError):
    """Swap gateway could not produce a quote."""


class SwapExecutionError(GatewayError):
    """Swap gateway failed to execute a quoted trade."""


class BridgeGatewayError(GatewayError):
    """Bridge gateway rejected or failed a request."""


class TransferError(GatewayError):
    """On-chain value transfer failed."""


@dataclass
class SwapQuote:
    """Quote with an executable payload.

    Amounts are integer base units, exactly as the gateway returned them.
    """

    input_mint: str
    output_mint: str
    in_amount: str
    out_amount: str
    slippage_bps: int
    price_impact_pct: str = "0"
    request_id: Optional[str] = None
    payload: Optional[str] = None  # Base64 transaction to sign

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SwapQuote":
        return cls(**data)


class SwapGateway(ABC):
    """Abstract base class for swap execution venues."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway name."""
        raise NotImplementedError()

    @abstractmethod
    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        only_direct_routes: bool = True,
    ) -> SwapQuote:
        """Quote ``amount`` base units of ``input_mint``.

        Raises:
            QuoteError: if no quote is available
        """
        raise NotImplementedError()

    @abstractmethod
    async def execute(self, quote: SwapQuote) -> str:
        """Sign and execute a quoted trade.

        Returns:
            Settlement reference (transaction signature)

        Raises:
            SwapExecutionError: if execution failed
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_token_decimals(self, mint: str) -> int:
        """Look up the decimals of a token."""
        raise NotImplementedError()


class ExchangeState(str, Enum):
    """Lifecycle status of a bridge exchange."""

    WAITING = "waiting"
    CONFIRMING = "confirming"
    EXCHANGING = "exchanging"
    SENDING = "sending"
    FINISHED = "finished"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"

    @property
    def is_failure(self) -> bool:
        return self in (ExchangeState.FAILED, ExchangeState.REFUNDED, ExchangeState.EXPIRED)


@dataclass
class Exchange:
    """Exchange created on the bridge gateway."""

    exchange_id: str
    deposit_address: str
    expected_amount: Optional[Decimal] = None


@dataclass
class ExchangeStatus:
    """Current state of a bridge exchange."""

    exchange_id: str
    status: ExchangeState
    amount_received: Optional[Decimal] = None  # Amount paid out to addressTo
    tx_from: Optional[str] = None              # Inbound transfer seen by the gateway
    tx_to: Optional[str] = None                # Outbound payout transfer


class BridgeGateway(ABC):
    """Abstract base class for two-leg bridge exchanges."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway name."""
        raise NotImplementedError()

    @abstractmethod
    async def create_exchange(
        self,
        from_asset: str,
        to_asset: str,
        amount: Decimal,
        address_to: str,
    ) -> Exchange:
        """Create an exchange paying out to ``address_to``.

        Raises:
            BridgeGatewayError: if the exchange could not be created
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_status(self, exchange_id: str) -> ExchangeStatus:
        """Fetch the current status of an exchange.

        Raises:
            BridgeGatewayError: if the status could not be fetched
        """
        raise NotImplementedError()


class ChainTransfer(ABC):
    """Sends value from a system wallet on one chain."""

    @property
    @abstractmethod
    def asset(self) -> str:
        """Asset this transfer moves (SOL, TRX)."""
        raise NotImplementedError()

    @property
    @abstractmethod
    def address(self) -> str:
        """System wallet address funds are sent from."""
        raise NotImplementedError()

    @abstractmethod
    async def send(self, to_address: str, amount: Decimal) -> str:
        """Send ``amount`` to ``to_address``.

        Returns:
            Transfer reference (transaction id)

        Raises:
            TransferError: if the transfer failed
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        """Balance of ``address``, or of the system wallet."""
        raise NotImplementedError()
