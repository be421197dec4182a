"""Tests for the ledger repository guards."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import TOKEN_MINT, create_wallet, get_balance, get_holding
from vaultswap.ledger.database import atomic
from vaultswap.ledger.models import (
    BridgeDirection,
    BridgeStatus,
    SwapDirection,
    SwapJobStatus,
    TransactionKind,
    TransactionStatus,
)
from vaultswap.ledger.repository import SEND_LOCK_MARKER, LedgerRepository
from vaultswap.ledger.snapshots import FullRestore
from vaultswap.utils.refs import utcnow


def _sell_snapshot(amount: str, cost: str, sell: str, cost_deducted: str) -> FullRestore:
    return FullRestore(
        asset=TOKEN_MINT,
        amount=Decimal(amount),
        total_cost_basis=Decimal(cost),
        average_entry_price=Decimal(cost) / Decimal(amount),
        amount_after=Decimal(amount) - Decimal(sell),
        cost_basis_after=Decimal(cost) - Decimal(cost_deducted),
    )


async def _pending_buy_job(session_factory, wallet_id: int) -> int:
    async with atomic(session_factory) as session:
        repo = LedgerRepository(session)
        tx = await repo.create_transaction(
            wallet_id, TransactionKind.BUY, TOKEN_MINT, Decimal("120"), Decimal("3")
        )
        job = await repo.create_swap_job(
            wallet_id=wallet_id,
            transaction_id=tx.id,
            direction=SwapDirection.BUY,
            asset=TOKEN_MINT,
            symbol="TKN",
            decimals=6,
            settlement_amount=Decimal("3"),
            asset_amount=Decimal("120"),
            quote_snapshot="{}",
            restore_snapshot="{}",
        )
        return job.id


class TestWalletAndBalance:
    """Tests for wallet and balance operations."""

    @pytest.mark.asyncio
    async def test_create_wallet_with_balance(self, session_factory):
        wallet_id = await create_wallet(session_factory, balance=Decimal("2.5"))

        assert await get_balance(session_factory, wallet_id) == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_debit_refuses_overdraft(self, ledger_repo, db_session):
        wallet = await ledger_repo.create_wallet("addr", "owner", initial_balance=Decimal("1"))

        assert await ledger_repo.debit_balance(wallet.id, Decimal("0.4")) is True
        assert await ledger_repo.debit_balance(wallet.id, Decimal("0.7")) is False
        await db_session.commit()

        balance = await ledger_repo.get_balance(wallet.id)
        assert balance.amount == Decimal("0.6")

    @pytest.mark.asyncio
    async def test_credit_missing_balance_raises(self, ledger_repo):
        with pytest.raises(ValueError):
            await ledger_repo.credit_balance(999, Decimal("1"))

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_go_negative(self, session_factory):
        wallet_id = await create_wallet(session_factory, balance=Decimal("10"))

        async def debit() -> bool:
            async with atomic(session_factory) as session:
                return await LedgerRepository(session).debit_balance(wallet_id, Decimal("3"))

        results = await asyncio.gather(*(debit() for _ in range(5)))

        assert results.count(True) == 3
        assert await get_balance(session_factory, wallet_id) == Decimal("1")


class TestHoldings:
    """Tests for holding operations."""

    @pytest.mark.asyncio
    async def test_pending_then_settle(self, ledger_repo, db_session):
        wallet = await ledger_repo.create_wallet("addr", "owner")
        await ledger_repo.add_pending_inbound(wallet.id, TOKEN_MINT, "TKN", Decimal("120"))
        await ledger_repo.settle_into_holding(
            wallet.id, TOKEN_MINT, "TKN",
            received=Decimal("118"), pending_release=Decimal("120"), cost=Decimal("3"),
        )
        await db_session.commit()

        holding = await ledger_repo.get_holding(wallet.id, TOKEN_MINT)
        assert holding.amount == Decimal("118")
        assert holding.pending_amount == Decimal("0")
        assert holding.total_cost_basis == Decimal("3")
        assert holding.average_entry_price > 0

    @pytest.mark.asyncio
    async def test_debit_holding_guard(self, ledger_repo):
        wallet = await ledger_repo.create_wallet("addr", "owner")
        await ledger_repo.settle_into_holding(
            wallet.id, TOKEN_MINT, "TKN",
            received=Decimal("100"), pending_release=Decimal("0"), cost=Decimal("2"),
        )

        assert await ledger_repo.debit_holding(
            wallet.id, _sell_snapshot("100", "2", "150", "3")
        ) is False
        # Stale snapshot: the row no longer holds what the caller read
        assert await ledger_repo.debit_holding(
            wallet.id, _sell_snapshot("90", "2", "50", "1")
        ) is False
        assert await ledger_repo.debit_holding(
            wallet.id, _sell_snapshot("100", "2", "50", "1")
        ) is True

        holding = await ledger_repo.get_holding(wallet.id, TOKEN_MINT)
        assert holding.amount == Decimal("50")
        assert holding.total_cost_basis == Decimal("1")

    @pytest.mark.asyncio
    async def test_restore_holding_exact(self, ledger_repo):
        wallet = await ledger_repo.create_wallet("addr", "owner")
        await ledger_repo.settle_into_holding(
            wallet.id, TOKEN_MINT, "TKN",
            received=Decimal("500"), pending_release=Decimal("0"), cost=Decimal("10"),
        )
        before = await ledger_repo.get_holding(wallet.id, TOKEN_MINT)
        snapshot = FullRestore(
            asset=TOKEN_MINT,
            amount=before.amount,
            total_cost_basis=before.total_cost_basis,
            average_entry_price=before.average_entry_price,
            amount_after=Decimal("300"),
            cost_basis_after=Decimal("6"),
        )
        assert await ledger_repo.debit_holding(wallet.id, snapshot) is True

        assert await ledger_repo.restore_holding(wallet.id, snapshot) is True
        after = await ledger_repo.get_holding(wallet.id, TOKEN_MINT)
        assert after.amount == Decimal("500")
        assert after.total_cost_basis == Decimal("10")

    @pytest.mark.asyncio
    async def test_restore_holding_exact_with_fractional_amounts(self, ledger_repo):
        wallet = await ledger_repo.create_wallet("addr", "owner")
        await ledger_repo.settle_into_holding(
            wallet.id, TOKEN_MINT, "TKN",
            received=Decimal("1.1"), pending_release=Decimal("0"), cost=Decimal("0.3"),
        )
        before = await ledger_repo.get_holding(wallet.id, TOKEN_MINT)
        snapshot = _sell_snapshot(
            str(before.amount), str(before.total_cost_basis), "0.2", "0.054545455"
        )
        assert await ledger_repo.debit_holding(wallet.id, snapshot) is True

        reserved = await ledger_repo.get_holding(wallet.id, TOKEN_MINT)
        assert reserved.amount == Decimal("0.9")

        assert await ledger_repo.restore_holding(wallet.id, snapshot) is True
        after = await ledger_repo.get_holding(wallet.id, TOKEN_MINT)
        assert after.amount == Decimal("1.1")
        assert after.total_cost_basis == Decimal("0.3")

    @pytest.mark.asyncio
    async def test_restore_holding_after_change_adds_delta(self, ledger_repo):
        wallet = await ledger_repo.create_wallet("addr", "owner")
        await ledger_repo.settle_into_holding(
            wallet.id, TOKEN_MINT, "TKN",
            received=Decimal("500"), pending_release=Decimal("0"), cost=Decimal("10"),
        )
        snapshot = FullRestore(
            asset=TOKEN_MINT,
            amount=Decimal("500"),
            total_cost_basis=Decimal("10"),
            average_entry_price=Decimal("0.02"),
            amount_after=Decimal("300"),
            cost_basis_after=Decimal("6"),
        )
        assert await ledger_repo.debit_holding(wallet.id, snapshot) is True
        # Another buy settles in meanwhile
        await ledger_repo.settle_into_holding(
            wallet.id, TOKEN_MINT, "TKN",
            received=Decimal("100"), pending_release=Decimal("0"), cost=Decimal("2"),
        )

        assert await ledger_repo.restore_holding(wallet.id, snapshot) is False
        after = await ledger_repo.get_holding(wallet.id, TOKEN_MINT)
        assert after.amount == Decimal("600")
        assert after.total_cost_basis == Decimal("12")

    @pytest.mark.asyncio
    async def test_delete_only_when_empty(self, session_factory, ledger_repo, db_session):
        wallet = await ledger_repo.create_wallet("addr", "owner")
        await ledger_repo.add_pending_inbound(wallet.id, TOKEN_MINT, "TKN", Decimal("5"))

        assert await ledger_repo.delete_holding_if_empty(wallet.id, TOKEN_MINT) is False
        await ledger_repo.release_pending_inbound(wallet.id, TOKEN_MINT, Decimal("5"))
        assert await ledger_repo.delete_holding_if_empty(wallet.id, TOKEN_MINT) is True
        await db_session.commit()

        assert await get_holding(session_factory, wallet.id) is None


class TestTransactions:
    """Tests for transaction operations."""

    @pytest.mark.asyncio
    async def test_one_pending_per_kind(self, session_factory, wallet_id):
        async with atomic(session_factory) as session:
            await LedgerRepository(session).create_transaction(
                wallet_id, TransactionKind.BUY, TOKEN_MINT, Decimal("1"), Decimal("1")
            )

        with pytest.raises(IntegrityError):
            async with atomic(session_factory) as session:
                await LedgerRepository(session).create_transaction(
                    wallet_id, TransactionKind.BUY, TOKEN_MINT, Decimal("2"), Decimal("2")
                )

        # A different kind is allowed
        async with atomic(session_factory) as session:
            tx = await LedgerRepository(session).create_transaction(
                wallet_id, TransactionKind.SELL, TOKEN_MINT, Decimal("1"), Decimal("1")
            )
        assert tx.status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_complete_only_once(self, ledger_repo):
        wallet = await ledger_repo.create_wallet("addr", "owner")
        tx = await ledger_repo.create_transaction(
            wallet.id, TransactionKind.DEPOSIT, "SOL", Decimal("1"), Decimal("1")
        )

        assert await ledger_repo.complete_transaction(tx.id, chain_reference="sig") is True
        assert await ledger_repo.complete_transaction(tx.id) is False
        assert await ledger_repo.fail_transaction(tx.id) is False


class TestSwapJobs:
    """Tests for swap job claim and settlement guards."""

    @pytest.mark.asyncio
    async def test_claim_once(self, session_factory, wallet_id):
        job_id = await _pending_buy_job(session_factory, wallet_id)

        async with atomic(session_factory) as session:
            repo = LedgerRepository(session)
            assert await repo.claim_job(job_id, "worker-a") is True
            assert await repo.claim_job(job_id, "worker-b") is False
            job = await repo.get_swap_job(job_id)

        assert job.status == SwapJobStatus.PROCESSING
        assert job.claimed_by == "worker-a"

    @pytest.mark.asyncio
    async def test_reference_recorded_once(self, session_factory, wallet_id):
        job_id = await _pending_buy_job(session_factory, wallet_id)

        async with atomic(session_factory) as session:
            repo = LedgerRepository(session)
            await repo.claim_job(job_id, "worker-a")
            assert await repo.record_settlement_reference(job_id, "sig-1") is True
            assert await repo.record_settlement_reference(job_id, "sig-2") is False
            job = await repo.get_swap_job(job_id)

        assert job.settlement_reference == "sig-1"

    @pytest.mark.asyncio
    async def test_requeue_skips_jobs_with_reference(self, session_factory, wallet_id):
        job_id = await _pending_buy_job(session_factory, wallet_id)
        future_cutoff = utcnow() + timedelta(minutes=5)

        async with atomic(session_factory) as session:
            repo = LedgerRepository(session)
            await repo.claim_job(job_id, "worker-a")
            await repo.record_settlement_reference(job_id, "sig-1")

        async with atomic(session_factory) as session:
            assert await LedgerRepository(session).requeue_stale_jobs(future_cutoff) == 0

    @pytest.mark.asyncio
    async def test_requeued_job_claimed_by_one_worker(self, session_factory, wallet_id):
        job_id = await _pending_buy_job(session_factory, wallet_id)

        async with atomic(session_factory) as session:
            await LedgerRepository(session).claim_job(job_id, "crashed-worker")

        async with atomic(session_factory) as session:
            requeued = await LedgerRepository(session).requeue_stale_jobs(utcnow() + timedelta(seconds=1))
        assert requeued == 1

        async def claim(worker_id: str) -> bool:
            async with atomic(session_factory) as session:
                return await LedgerRepository(session).claim_job(job_id, worker_id)

        results = await asyncio.gather(claim("worker-a"), claim("worker-b"))
        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_finish_requires_processing(self, session_factory, wallet_id):
        job_id = await _pending_buy_job(session_factory, wallet_id)

        async with atomic(session_factory) as session:
            repo = LedgerRepository(session)
            assert await repo.finish_job(job_id, SwapJobStatus.COMPLETED) is False
            await repo.claim_job(job_id, "worker-a")
            assert await repo.finish_job(job_id, SwapJobStatus.COMPLETED) is True
            assert await repo.finish_job(job_id, SwapJobStatus.FAILED, "late") is False


class TestBridgeOperations:
    """Tests for bridge operation guards."""

    @pytest.mark.asyncio
    async def test_one_active_per_direction(self, session_factory, wallet_id):
        async with atomic(session_factory) as session:
            await LedgerRepository(session).create_operation(
                wallet_id, BridgeDirection.DEPOSIT, Decimal("1"), "ex-1", "addr-1"
            )

        with pytest.raises(IntegrityError):
            async with atomic(session_factory) as session:
                await LedgerRepository(session).create_operation(
                    wallet_id, BridgeDirection.DEPOSIT, Decimal("2"), "ex-2", "addr-2"
                )

        async with atomic(session_factory) as session:
            repo = LedgerRepository(session)
            await repo.create_operation(
                wallet_id, BridgeDirection.WITHDRAWAL, Decimal("1"), "ex-3", "addr-3", "dest"
            )
            active = await repo.get_active_operation(wallet_id, BridgeDirection.DEPOSIT)
        assert active.leg1_id == "ex-1"

    @pytest.mark.asyncio
    async def test_transition_is_guarded(self, ledger_repo):
        wallet = await ledger_repo.create_wallet("addr", "owner")
        op = await ledger_repo.create_operation(wallet.id, BridgeDirection.DEPOSIT, Decimal("1"), "ex", "a")

        assert await ledger_repo.transition_operation(
            op.id, BridgeStatus.WAITING_LEG2, status=BridgeStatus.FINISHED
        ) is False
        assert await ledger_repo.transition_operation(
            op.id, BridgeStatus.WAITING_LEG1, status=BridgeStatus.FAILED
        ) is True
        assert await ledger_repo.transition_operation(
            op.id, BridgeStatus.WAITING_LEG1, status=BridgeStatus.FAILED
        ) is False

    @pytest.mark.asyncio
    async def test_send_lock(self, ledger_repo):
        wallet = await ledger_repo.create_wallet("addr", "owner")
        op = await ledger_repo.create_operation(wallet.id, BridgeDirection.DEPOSIT, Decimal("1"), "ex", "a")

        assert await ledger_repo.acquire_send_lock(op.id, BridgeStatus.WAITING_LEG1, "leg2_send_ref") is True
        assert await ledger_repo.acquire_send_lock(op.id, BridgeStatus.WAITING_LEG1, "leg2_send_ref") is False

        # Fresh lock is not released by the stale cutoff
        cutoff = utcnow() - timedelta(minutes=2)
        assert await ledger_repo.release_send_lock(op.id, "leg2_send_ref", older_than=cutoff) is False

        assert await ledger_repo.complete_send(op.id, "leg2_send_ref", "trx-1") is True
        refreshed = await ledger_repo.get_operation(op.id)
        assert refreshed.leg2_send_ref == "trx-1"
        assert refreshed.leg2_send_ref != SEND_LOCK_MARKER

        # Once a reference is stored the lock cannot be taken again
        assert await ledger_repo.acquire_send_lock(op.id, BridgeStatus.WAITING_LEG1, "leg2_send_ref") is False

    @pytest.mark.asyncio
    async def test_unknown_marker_rejected(self, ledger_repo):
        with pytest.raises(ValueError):
            await ledger_repo.acquire_send_lock(1, BridgeStatus.WAITING_LEG1, "status")
