"""TRON transfers from the privacy relay wallet using tronpy."""

import logging
from decimal import Decimal
from typing import Optional

from tronpy import AsyncTron
from tronpy.exceptions import AddressNotFound
from tronpy.keys import PrivateKey
from tronpy.providers.async_http import AsyncHTTPProvider

from vaultswap.gateways.base import ChainTransfer, TransferError
from vaultswap.utils.amounts import to_base_units

logger = logging.getLogger(__name__)

TRX_DECIMALS = 6


def load_private_key(private_key: str) -> PrivateKey:
    """Parse a hex private key, with or without 0x prefix."""
    return PrivateKey(bytes.fromhex(private_key.strip().removeprefix("0x")))


def tron_address_from_key(private_key: str) -> str:
    """Derive the base58check TRON address of a hex private key."""
    return load_private_key(private_key).public_key.to_base58check_address()


class TronTransfer(ChainTransfer):
    """Sends TRX from the privacy relay wallet."""

    def __init__(
        self,
        api_url: str,
        private_key: Optional[str],
        address: str,
        api_key: str = "",
        timeout: float = 30.0,
    ):
        self.api_url = api_url.rstrip("/")
        self._private_key = private_key
        self._address = address
        self.api_key = api_key
        self.timeout = timeout

    @property
    def asset(self) -> str:
        return "TRX"

    @property
    def address(self) -> str:
        return self._address

    def _client(self) -> AsyncTron:
        provider = AsyncHTTPProvider(
            self.api_url, timeout=self.timeout, api_key=self.api_key or None
        )
        return AsyncTron(provider=provider)

    def _checked_key(self) -> PrivateKey:
        if not self._private_key:
            raise TransferError("Relay wallet private key not configured")
        try:
            key = load_private_key(self._private_key)
        except ValueError as e:
            raise TransferError(f"Invalid relay wallet private key: {e}") from e
        if key.public_key.to_base58check_address() != self._address:
            raise TransferError("Relay wallet private key does not match its address")
        return key

    async def send(self, to_address: str, amount: Decimal) -> str:
        """Send TRX to an address and return the transaction id."""
        amount_sun = to_base_units(amount, TRX_DECIMALS)
        if amount_sun <= 0:
            raise TransferError(f"Refusing to send non-positive amount: {amount}")

        private_key = self._checked_key()
        logger.info(f"Sending {amount} TRX ({amount_sun} SUN) from {self._address} to {to_address}")

        try:
            async with self._client() as client:
                txn = await client.trx.transfer(self._address, to_address, amount_sun).build()
                txn.sign(private_key)
                await txn.broadcast()
        except Exception as e:
            logger.error(f"TRX transfer to {to_address} failed: {e}")
            raise TransferError(f"Failed to send TRX: {e}") from e

        logger.info(f"TRX transfer sent: {txn.txid}")
        return txn.txid

    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        target = address or self._address
        try:
            async with self._client() as client:
                return Decimal(await client.get_account_balance(target))
        except AddressNotFound:
            # Never-activated accounts have no balance entry
            return Decimal("0")
        except Exception as e:
            logger.error(f"Failed to fetch TRX balance for {target}: {e}")
            raise TransferError(f"Failed to fetch TRX balance: {e}") from e
