"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["DEBUG"] = "false"
os.environ["DRY_RUN"] = "true"

from vaultswap.config import Settings
from vaultswap.gateways.dryrun import DryRunSwapGateway
from vaultswap.ledger.database import atomic
from vaultswap.ledger.models import Base
from vaultswap.ledger.repository import LedgerRepository
from vaultswap.notifications.telegram import TelegramNotifier

OWNER = "owner-1"
TOKEN_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
CHAT_ID = 424242


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed database so several sessions (workers) can share it."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        dry_run=True,
        telegram_bot_token="",
        stale_job_seconds=120,
        send_lock_timeout_seconds=120,
        tron_fee_reserve=Decimal("2"),
        min_bridge_amount=Decimal("0.05"),
        recovery_min_intermediate=Decimal("10"),
    )


@pytest.fixture
def swap_gateway() -> DryRunSwapGateway:
    """40 tokens per SOL, 6-decimal token."""
    return DryRunSwapGateway(rate=40, decimals=6)


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=TelegramNotifier)


async def create_wallet(
    session_factory,
    balance: Decimal = Decimal("10"),
    owner_ref: str = OWNER,
    address: str = "wallet-1",
    telegram_chat_id=CHAT_ID,
) -> int:
    async with atomic(session_factory) as session:
        wallet = await LedgerRepository(session).create_wallet(
            address=address,
            owner_ref=owner_ref,
            initial_balance=balance,
            telegram_chat_id=telegram_chat_id,
        )
        return wallet.id


@pytest_asyncio.fixture
async def wallet_id(session_factory) -> int:
    """Wallet with 10 SOL."""
    return await create_wallet(session_factory)


async def get_balance(session_factory, wallet_id: int) -> Decimal:
    async with atomic(session_factory) as session:
        balance = await LedgerRepository(session).get_balance(wallet_id)
        return balance.amount


async def get_holding(session_factory, wallet_id: int, asset: str = TOKEN_MINT):
    async with atomic(session_factory) as session:
        return await LedgerRepository(session).get_holding(wallet_id, asset)
