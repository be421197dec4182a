"""SQLAlchemy models for the settlement ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Amounts carry 9 decimal places: SOL lamports and SPL token base units
AMOUNT_SCALE = 9
AMOUNT = Numeric(28, AMOUNT_SCALE)
PRICE = Numeric(38, 18)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TransactionKind(str, Enum):
    """Kind of ledger-affecting event."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    BUY = "buy"
    SELL = "sell"


class TransactionStatus(str, Enum):
    """Status of a ledger transaction."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SwapDirection(str, Enum):
    """Side of a swap order."""

    BUY = "buy"    # Settlement currency -> token
    SELL = "sell"  # Token -> settlement currency


class SwapJobStatus(str, Enum):
    """Status of a queued swap job."""

    PENDING = "pending"        # Waiting to be claimed
    PROCESSING = "processing"  # Claimed by a worker
    COMPLETED = "completed"    # Executed and settled
    FAILED = "failed"          # Rolled back


class BridgeDirection(str, Enum):
    """Direction of a two-leg bridge operation."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class BridgeStatus(str, Enum):
    """Status of a two-leg bridge operation."""

    WAITING_LEG1 = "waiting_leg1"  # First exchange not yet finished
    WAITING_LEG2 = "waiting_leg2"  # Second exchange funded, not yet finished
    FINISHED = "finished"
    FAILED = "failed"


class Wallet(Base):
    """Custodial wallet owned by an authenticated identity."""

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    owner_ref: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    telegram_chat_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    balance: Mapped[Optional["Balance"]] = relationship(back_populates="wallet", lazy="selectin")
    holdings: Mapped[list["Holding"]] = relationship(back_populates="wallet", lazy="selectin")


class Balance(Base):
    """Settlement-currency balance, one row per wallet."""

    __tablename__ = "balances"
    __table_args__ = (CheckConstraint("amount >= 0", name="ck_balances_non_negative"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    wallet: Mapped["Wallet"] = relationship(back_populates="balance")


class Holding(Base):
    """Token position of a wallet, with reserved inbound amount and cost basis."""

    __tablename__ = "holdings"
    __table_args__ = (
        Index("ix_holdings_wallet_asset", "wallet_id", "asset", unique=True),
        CheckConstraint("amount >= 0", name="ck_holdings_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False)
    asset: Mapped[str] = mapped_column(String(64), nullable=False)  # Token mint
    symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"), nullable=False)
    pending_amount: Mapped[Decimal] = mapped_column(
        AMOUNT, default=Decimal("0"), nullable=False
    )  # Reserved by a buy that has not settled yet
    total_cost_basis: Mapped[Decimal] = mapped_column(
        AMOUNT, default=Decimal("0"), nullable=False
    )  # In settlement currency
    average_entry_price: Mapped[Decimal] = mapped_column(
        PRICE, default=Decimal("0"), nullable=False
    )
    last_price_usd: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    last_price_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    wallet: Mapped["Wallet"] = relationship(back_populates="holdings")


class Transaction(Base):
    """Audit record of a ledger-affecting event. Never deleted."""

    __tablename__ = "transactions"
    __table_args__ = (
        # One pending transaction per wallet and kind
        Index(
            "ix_transactions_one_pending",
            "wallet_id",
            "kind",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False, index=True)
    reference: Mapped[str] = mapped_column(String(88), unique=True, nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    settlement_value: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        String(20), default=TransactionStatus.PENDING, nullable=False
    )
    chain_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    cost_basis_at_sale: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    realized_pnl: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    operation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bridge_operations.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SwapJob(Base):
    """Work-queue entry for an external swap."""

    __tablename__ = "swap_jobs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), unique=True, nullable=False
    )
    direction: Mapped[SwapDirection] = mapped_column(String(10), nullable=False)
    asset: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    decimals: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    settlement_amount: Mapped[Decimal] = mapped_column(
        AMOUNT, nullable=False
    )  # Spent on a buy, expected on a sell
    asset_amount: Mapped[Decimal] = mapped_column(
        AMOUNT, nullable=False
    )  # Expected on a buy, sold on a sell
    quote_snapshot: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    restore_snapshot: Mapped[str] = mapped_column(Text, nullable=False)  # JSON tagged variant
    notify_chat_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    settlement_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[SwapJobStatus] = mapped_column(
        String(20), default=SwapJobStatus.PENDING, nullable=False, index=True
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    transaction: Mapped["Transaction"] = relationship(lazy="selectin")


class BridgeOperation(Base):
    """Two-leg bridge deposit or withdrawal through an intermediate asset."""

    __tablename__ = "bridge_operations"
    __table_args__ = (
        # One in-flight operation per wallet and direction
        Index(
            "ix_bridge_operations_one_active",
            "wallet_id",
            "direction",
            unique=True,
            sqlite_where=text("status IN ('waiting_leg1', 'waiting_leg2')"),
            postgresql_where=text("status IN ('waiting_leg1', 'waiting_leg2')"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False, index=True)
    direction: Mapped[BridgeDirection] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)  # Requested SOL
    intermediate_amount: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    settled_amount: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    destination_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    leg1_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    leg1_deposit_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    leg1_send_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    leg2_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    leg2_deposit_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    leg2_send_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    send_locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )  # Set while a send marker holds the outbound lock
    outbound_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    status: Mapped[BridgeStatus] = mapped_column(
        String(20), default=BridgeStatus.WAITING_LEG1, nullable=False, index=True
    )
    recovered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    leg1_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    leg2_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditEvent(Base):
    """Operator-auditable event that needs manual review."""

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(String(30), nullable=False)
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
