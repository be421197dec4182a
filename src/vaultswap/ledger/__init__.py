"""Ledger store: wallets, balances, holdings, transactions and work queues."""

from vaultswap.ledger.database import atomic, get_db, get_session_factory, init_db
from vaultswap.ledger.models import (
    AuditEvent,
    Balance,
    BridgeDirection,
    BridgeOperation,
    BridgeStatus,
    Holding,
    SwapDirection,
    SwapJob,
    SwapJobStatus,
    Transaction,
    TransactionKind,
    TransactionStatus,
    Wallet,
)
from vaultswap.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "Wallet",
    "Balance",
    "Holding",
    "Transaction",
    "SwapJob",
    "BridgeOperation",
    "AuditEvent",
    # Enums
    "BridgeDirection",
    "BridgeStatus",
    "SwapDirection",
    "SwapJobStatus",
    "TransactionKind",
    "TransactionStatus",
    # Database
    "atomic",
    "get_db",
    "get_session_factory",
    "init_db",
    "LedgerRepository",
]
