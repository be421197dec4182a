"""Solana transfers from the liquidity router wallet.

Transactions are assembled by hand (legacy message, one System Program
transfer instruction) and signed with an ed25519 key via PyNaCl.
"""

import base64
import json
import logging
import struct
from decimal import Decimal
from typing import Any, Optional

import httpx
from bip_utils import Base58Decoder, Base58Encoder
from nacl.signing import SigningKey

from vaultswap.gateways.base import ChainTransfer, TransferError
from vaultswap.utils.amounts import from_base_units, to_base_units

logger = logging.getLogger(__name__)

SOL_DECIMALS = 9
SYSTEM_PROGRAM_ID = bytes(32)
TRANSFER_INSTRUCTION = 2


def parse_secret_key(secret: str) -> SigningKey:
    """Load a Solana keypair given as base58 or as a JSON byte array."""
    secret = secret.strip()
    if secret.startswith("[") and secret.endswith("]"):
        raw = bytes(json.loads(secret))
    else:
        raw = Base58Decoder.Decode(secret)
    if len(raw) not in (32, 64):
        raise ValueError(f"Invalid Solana secret key length: {len(raw)}")
    return SigningKey(raw[:32])


def public_key_of(signing_key: SigningKey) -> str:
    return Base58Encoder.Encode(bytes(signing_key.verify_key))


def _compact_u16(value: int) -> bytes:
    """Solana short-vec length encoding."""
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _read_compact_u16(data: bytes, offset: int) -> tuple[int, int]:
    value = 0
    shift = 0
    while True:
        byte = data[offset]
        offset += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset
        shift += 7


def sign_serialized_transaction(tx_base64: str, signing_key: SigningKey) -> str:
    """Sign a serialized transaction whose first signer is ``signing_key``.

    Works for both legacy and versioned transactions: the signature count is
    a short-vec prefix, followed by 64-byte signature slots and the message.
    """
    tx_bytes = bytearray(base64.b64decode(tx_base64))
    num_signatures, sig_offset = _read_compact_u16(tx_bytes, 0)
    if num_signatures < 1:
        raise ValueError("Transaction has no signature slots")
    message_offset = sig_offset + num_signatures * 64

    signature = signing_key.sign(bytes(tx_bytes[message_offset:])).signature
    tx_bytes[sig_offset:sig_offset + 64] = signature
    return base64.b64encode(bytes(tx_bytes)).decode()


def build_transfer_transaction(
    signing_key: SigningKey, to_address: str, lamports: int, recent_blockhash: str
) -> str:
    """Build and sign a legacy SOL transfer transaction, base64 encoded."""
    from_key = bytes(signing_key.verify_key)
    to_key = Base58Decoder.Decode(to_address)
    if len(to_key) != 32:
        raise ValueError(f"Invalid Solana address: {to_address}")

    # Header: 1 required signature, 0 readonly signed, 1 readonly unsigned (system program)
    message = bytes([1, 0, 1])
    message += _compact_u16(3) + from_key + to_key + SYSTEM_PROGRAM_ID
    message += Base58Decoder.Decode(recent_blockhash)

    data = struct.pack("<IQ", TRANSFER_INSTRUCTION, lamports)
    instruction = bytes([2]) + _compact_u16(2) + bytes([0, 1]) + _compact_u16(len(data)) + data
    message += _compact_u16(1) + instruction

    signature = signing_key.sign(message).signature
    return base64.b64encode(_compact_u16(1) + signature + message).decode()


class SolanaRpc:
    """Minimal JSON-RPC client for a Solana node."""

    def __init__(self, rpc_url: str, timeout: float = 30.0):
        self.rpc_url = rpc_url
        self.timeout = timeout

    async def call(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        if data.get("error"):
            raise RuntimeError(f"{method} failed: {data['error']}")
        return data.get("result")

    async def get_latest_blockhash(self) -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": "finalized"}])
        return result["value"]["blockhash"]

    async def send_transaction(self, tx_base64: str) -> str:
        return await self.call(
            "sendTransaction",
            [tx_base64, {"encoding": "base64", "preflightCommitment": "confirmed"}],
        )

    async def get_balance(self, address: str) -> int:
        result = await self.call("getBalance", [address, {"commitment": "confirmed"}])
        return int(result["value"])

    async def get_mint_decimals(self, mint: str) -> Any:
        result = await self.call("getAccountInfo", [mint, {"encoding": "jsonParsed"}])
        value = (result or {}).get("value") or {}
        data = value.get("data")
        if not isinstance(data, dict):
            raise RuntimeError(f"Account {mint} is not a parsed mint")
        return data["parsed"]["info"]["decimals"]


class SolanaTransfer(ChainTransfer):
    """Sends SOL from the liquidity router wallet."""

    def __init__(self, rpc_url: str, secret_key: Optional[str], address: str):
        self.rpc = SolanaRpc(rpc_url)
        self._secret_key = secret_key
        self._address = address

    @property
    def asset(self) -> str:
        return "SOL"

    @property
    def address(self) -> str:
        return self._address

    def _signing_key(self) -> SigningKey:
        if not self._secret_key:
            raise TransferError("Liquidity router secret key not configured")
        try:
            signing_key = parse_secret_key(self._secret_key)
        except ValueError as e:
            raise TransferError(f"Invalid liquidity router secret key: {e}") from e
        if self._address and public_key_of(signing_key) != self._address:
            raise TransferError("Liquidity router secret key does not match its address")
        return signing_key

    async def send(self, to_address: str, amount: Decimal) -> str:
        """Send SOL to an address and return the transaction signature."""
        lamports = to_base_units(amount, SOL_DECIMALS)
        if lamports <= 0:
            raise TransferError(f"Refusing to send non-positive amount: {amount}")

        signing_key = self._signing_key()
        logger.info(f"Sending {amount} SOL from {self._address} to {to_address}")

        try:
            blockhash = await self.rpc.get_latest_blockhash()
            tx = build_transfer_transaction(signing_key, to_address, lamports, blockhash)
            signature = await self.rpc.send_transaction(tx)
        except (httpx.HTTPError, RuntimeError, ValueError, KeyError) as e:
            logger.error(f"SOL transfer to {to_address} failed: {e}")
            raise TransferError(f"Failed to send SOL: {e}") from e

        logger.info(f"SOL transfer sent: {signature}")
        return signature

    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        try:
            lamports = await self.rpc.get_balance(address or self._address)
        except (httpx.HTTPError, RuntimeError, KeyError) as e:
            raise TransferError(f"Failed to fetch SOL balance: {e}") from e
        return from_base_units(lamports, SOL_DECIMALS)
