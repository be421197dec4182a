"""Tests for the bridge step orchestrator."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from conftest import CHAT_ID, OWNER, create_wallet, get_balance
from vaultswap.errors import (
    BridgeUnavailable,
    DuplicatePendingOperation,
    InsufficientFunds,
    OrderNotFound,
    UnauthorizedWallet,
    ValidationError,
)
from vaultswap.gateways.base import (
    BridgeGateway,
    BridgeGatewayError,
    ChainTransfer,
    Exchange,
    ExchangeState,
    ExchangeStatus,
    TransferError,
)
from vaultswap.ledger.database import atomic
from vaultswap.ledger.models import (
    BridgeDirection,
    BridgeOperation,
    BridgeStatus,
    TransactionStatus,
)
from vaultswap.ledger.repository import SEND_LOCK_MARKER, LedgerRepository
from vaultswap.services.bridge import BridgeOrchestrator, validate_solana_address
from vaultswap.utils.refs import utcnow

DESTINATION = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
RELAY_ADDRESS = "TRelayWalletAddress000000000000000"
ROUTER_ADDRESS = "RouterWa11etAddress1111111111111111111111111"


class FakeBridge:
    """Scriptable bridge gateway: statuses are set per exchange id."""

    def __init__(self):
        self.created: list[tuple] = []
        self.statuses: dict[str, ExchangeStatus] = {}
        self.gateway = AsyncMock(spec=BridgeGateway)
        self.gateway.create_exchange.side_effect = self._create
        self.gateway.get_status.side_effect = self._status

    async def _create(self, from_asset, to_asset, amount, address_to):
        self.created.append((from_asset, to_asset, amount, address_to))
        exchange_id = f"ex-leg{len(self.created)}"
        return Exchange(exchange_id=exchange_id, deposit_address=f"{from_asset.lower()}-deposit-{len(self.created)}")

    async def _status(self, exchange_id):
        return self.statuses.get(exchange_id, ExchangeStatus(exchange_id, ExchangeState.WAITING))

    def finish(self, exchange_id, amount, tx_to=None):
        self.statuses[exchange_id] = ExchangeStatus(
            exchange_id, ExchangeState.FINISHED, amount_received=Decimal(amount), tx_to=tx_to
        )

    def fail(self, exchange_id, state=ExchangeState.REFUNDED):
        self.statuses[exchange_id] = ExchangeStatus(exchange_id, state)


def _transfer(address: str, reference: str) -> AsyncMock:
    transfer = AsyncMock(spec=ChainTransfer)
    transfer.address = address
    transfer.send.return_value = reference
    transfer.get_balance.return_value = Decimal("0")
    return transfer


@pytest.fixture
def bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def router() -> AsyncMock:
    return _transfer(ROUTER_ADDRESS, "sol-send-1")


@pytest.fixture
def relay() -> AsyncMock:
    return _transfer(RELAY_ADDRESS, "trx-send-1")


@pytest.fixture
def orchestrator(bridge, router, relay, session_factory, notifier, settings) -> BridgeOrchestrator:
    return BridgeOrchestrator(bridge.gateway, router, relay, session_factory, notifier, settings)


async def _operation(session_factory, op_id=None) -> BridgeOperation:
    async with atomic(session_factory) as session:
        repo = LedgerRepository(session)
        if op_id is None:
            ops = await repo.get_active_operations(BridgeDirection.DEPOSIT, 10)
            ops += await repo.get_active_operations(BridgeDirection.WITHDRAWAL, 10)
            op_id = ops[0].id if ops else 1
        return await repo.get_operation(op_id)


async def _operation_tx(session_factory, op_id):
    async with atomic(session_factory) as session:
        return await LedgerRepository(session).get_operation_transaction(op_id)


class TestDeposit:
    """Deposit 1.0 SOL that yields 500 TRX and pays out 0.98 SOL."""

    @pytest.mark.asyncio
    async def test_full_deposit(self, orchestrator, bridge, relay, session_factory, notifier):
        wallet_id = await create_wallet(session_factory, balance=Decimal("0"))

        receipt = await orchestrator.initiate_deposit(OWNER, wallet_id, "1.0")

        assert receipt.deposit_address == "sol-deposit-1"
        assert bridge.created[0] == ("SOL", "TRX", Decimal("1"), RELAY_ADDRESS)

        # Nothing happens while leg 1 waits
        assert await orchestrator.poll_once() == 0

        bridge.finish("ex-leg1", "500")
        assert await orchestrator.poll_once() == 1

        op = await _operation(session_factory)
        assert op.status == BridgeStatus.WAITING_LEG2
        assert op.intermediate_amount == Decimal("500")
        assert op.leg2_send_ref == "trx-send-1"
        assert bridge.created[1] == ("TRX", "SOL", Decimal("498"), ROUTER_ADDRESS)
        relay.send.assert_awaited_once_with("trx-deposit-2", Decimal("498"))

        bridge.finish("ex-leg2", "0.98", tx_to="sol-payout")
        assert await orchestrator.poll_once() == 1

        op = await _operation(session_factory, op.id)
        assert op.status == BridgeStatus.FINISHED
        assert op.settled_amount == Decimal("0.98")
        assert op.outbound_reference == "sol-payout"
        assert await get_balance(session_factory, wallet_id) == Decimal("0.98")
        tx = await _operation_tx(session_factory, op.id)
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.amount == Decimal("0.98")
        notifier.notify_bridge_finished.assert_awaited_once()
        assert notifier.notify_bridge_finished.await_args.args[0] == CHAT_ID

        # Repeated polling credits nothing more
        assert await orchestrator.poll_once() == 0
        assert await get_balance(session_factory, wallet_id) == Decimal("0.98")
        assert relay.send.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_pollers_credit_once(
        self, bridge, router, relay, session_factory, notifier, settings
    ):
        wallet_id = await create_wallet(session_factory, balance=Decimal("0"))
        first = BridgeOrchestrator(bridge.gateway, router, relay, session_factory, notifier, settings)
        await first.initiate_deposit(OWNER, wallet_id, "1.0")
        bridge.finish("ex-leg1", "500")
        await first.poll_once()
        bridge.finish("ex-leg2", "0.98")

        pollers = [
            BridgeOrchestrator(bridge.gateway, router, relay, session_factory, notifier, settings)
            for _ in range(3)
        ]
        results = await asyncio.gather(*(p.poll_once() for p in pollers))

        assert sum(results) == 1
        assert await get_balance(session_factory, wallet_id) == Decimal("0.98")

    @pytest.mark.asyncio
    async def test_leg1_failure_fails_without_credit(self, orchestrator, bridge, session_factory, wallet_id, notifier):
        await orchestrator.initiate_deposit(OWNER, wallet_id, "1")
        bridge.fail("ex-leg1", ExchangeState.EXPIRED)

        assert await orchestrator.poll_once() == 1

        op = await _operation(session_factory, 1)
        assert op.status == BridgeStatus.FAILED
        assert "expired" in op.failure_reason
        assert await get_balance(session_factory, wallet_id) == Decimal("10")
        tx = await _operation_tx(session_factory, op.id)
        assert tx.status == TransactionStatus.FAILED
        assert notifier.notify_bridge_failed.await_args.args[3] is False

    @pytest.mark.asyncio
    async def test_duplicate_deposit_rejected(self, orchestrator, bridge, wallet_id):
        await orchestrator.initiate_deposit(OWNER, wallet_id, "1")

        with pytest.raises(DuplicatePendingOperation):
            await orchestrator.initiate_deposit(OWNER, wallet_id, "2")
        assert len(bridge.created) == 1

    @pytest.mark.asyncio
    async def test_below_minimum(self, orchestrator, wallet_id):
        with pytest.raises(ValidationError):
            await orchestrator.initiate_deposit(OWNER, wallet_id, "0.01")

    @pytest.mark.asyncio
    async def test_gateway_unavailable_creates_nothing(self, orchestrator, bridge, session_factory, wallet_id):
        bridge.gateway.create_exchange.side_effect = BridgeGatewayError("Service unavailable")

        with pytest.raises(BridgeUnavailable):
            await orchestrator.initiate_deposit(OWNER, wallet_id, "1")

        async with atomic(session_factory) as session:
            assert await LedgerRepository(session).get_active_operation(wallet_id, BridgeDirection.DEPOSIT) is None

    @pytest.mark.asyncio
    async def test_other_owner_rejected(self, orchestrator, wallet_id):
        with pytest.raises(UnauthorizedWallet):
            await orchestrator.initiate_deposit("intruder", wallet_id, "1")

    @pytest.mark.asyncio
    async def test_leg2_send_failure_retries_with_same_exchange(
        self, orchestrator, bridge, relay, session_factory, wallet_id
    ):
        await orchestrator.initiate_deposit(OWNER, wallet_id, "1")
        bridge.finish("ex-leg1", "500")
        relay.send.side_effect = TransferError("bandwidth exhausted")

        assert await orchestrator.poll_once() == 0

        op = await _operation(session_factory, 1)
        assert op.status == BridgeStatus.WAITING_LEG1
        assert op.leg2_send_ref is None
        assert op.leg2_id == "ex-leg2"

        relay.send.side_effect = None
        relay.send.return_value = "trx-send-2"
        assert await orchestrator.poll_once() == 1

        op = await _operation(session_factory, 1)
        assert op.status == BridgeStatus.WAITING_LEG2
        assert op.leg2_send_ref == "trx-send-2"
        assert len(bridge.created) == 2

    @pytest.mark.asyncio
    async def test_intermediate_below_fee_reserve_is_not_sent(
        self, orchestrator, bridge, relay, session_factory, wallet_id
    ):
        await orchestrator.initiate_deposit(OWNER, wallet_id, "1")
        bridge.finish("ex-leg1", "1.5")

        assert await orchestrator.poll_once() == 0

        relay.send.assert_not_awaited()
        op = await _operation(session_factory, 1)
        assert op.leg2_send_ref is None


class TestSendLock:
    """The outbound send marker."""

    @pytest.mark.asyncio
    async def test_held_lock_blocks_second_send(self, orchestrator, bridge, relay, session_factory, wallet_id):
        await orchestrator.initiate_deposit(OWNER, wallet_id, "1")
        async with atomic(session_factory) as session:
            await LedgerRepository(session).acquire_send_lock(1, BridgeStatus.WAITING_LEG1, "leg2_send_ref")
        bridge.finish("ex-leg1", "500")

        assert await orchestrator.poll_once() == 0
        relay.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_abandoned_lock_released_and_audited(
        self, orchestrator, bridge, relay, session_factory, wallet_id
    ):
        await orchestrator.initiate_deposit(OWNER, wallet_id, "1")
        async with atomic(session_factory) as session:
            await LedgerRepository(session).acquire_send_lock(1, BridgeStatus.WAITING_LEG1, "leg2_send_ref")
            await session.execute(
                update(BridgeOperation)
                .where(BridgeOperation.id == 1)
                .values(send_locked_at=utcnow() - timedelta(minutes=10))
            )

        await orchestrator.poll_once()

        op = await _operation(session_factory, 1)
        assert op.leg2_send_ref is None
        async with atomic(session_factory) as session:
            events = await LedgerRepository(session).get_audit_events("send_lock_released")
        assert len(events) == 1

        bridge.finish("ex-leg1", "500")
        assert await orchestrator.poll_once() == 1
        relay.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_abandoned_lock_not_resent_when_leg2_received_funds(
        self, orchestrator, bridge, relay, session_factory, wallet_id
    ):
        await orchestrator.initiate_deposit(OWNER, wallet_id, "1")
        # A worker created leg 2 and sent to it, then died before recording the send
        async with atomic(session_factory) as session:
            repo = LedgerRepository(session)
            await repo.acquire_send_lock(1, BridgeStatus.WAITING_LEG1, "leg2_send_ref")
            await repo.update_operation(
                1, leg2_id="ex-leg2", leg2_deposit_address="trx-deposit-2", intermediate_amount=Decimal("500")
            )
            await session.execute(
                update(BridgeOperation)
                .where(BridgeOperation.id == 1)
                .values(send_locked_at=utcnow() - timedelta(minutes=10))
            )
        bridge.finish("ex-leg1", "500")
        bridge.statuses["ex-leg2"] = ExchangeStatus(
            "ex-leg2", ExchangeState.CONFIRMING, tx_from="trx-send-A"
        )

        assert await orchestrator.poll_once() == 1

        relay.send.assert_not_awaited()
        op = await _operation(session_factory, 1)
        assert op.status == BridgeStatus.WAITING_LEG2
        assert op.leg2_send_ref == "trx-send-A"
        assert len(bridge.created) == 1


class TestRecovery:
    """Deposits whose leg-1 exchange id was lost."""

    @pytest.mark.asyncio
    async def test_relay_balance_attributed_and_audited(self, orchestrator, bridge, relay, session_factory, wallet_id):
        async with atomic(session_factory) as session:
            op = await LedgerRepository(session).create_operation(
                wallet_id, BridgeDirection.DEPOSIT, Decimal("1"), None, None
            )
        relay.get_balance.return_value = Decimal("25")

        assert await orchestrator.poll_once() == 1

        op = await _operation(session_factory, op.id)
        assert op.recovered is True
        assert op.status == BridgeStatus.WAITING_LEG2
        relay.send.assert_awaited_once_with("trx-deposit-1", Decimal("23"))
        async with atomic(session_factory) as session:
            events = await LedgerRepository(session).get_audit_events("heuristic_deposit_recovery")
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_small_relay_balance_ignored(self, orchestrator, relay, session_factory, wallet_id):
        async with atomic(session_factory) as session:
            await LedgerRepository(session).create_operation(
                wallet_id, BridgeDirection.DEPOSIT, Decimal("1"), None, None
            )
        relay.get_balance.return_value = Decimal("3")

        assert await orchestrator.poll_once() == 0
        relay.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovered_deposit_finishes_and_credits(
        self, orchestrator, bridge, relay, session_factory, wallet_id, notifier
    ):
        async with atomic(session_factory) as session:
            op = await LedgerRepository(session).create_operation(
                wallet_id, BridgeDirection.DEPOSIT, Decimal("1"), None, None
            )
        relay.get_balance.return_value = Decimal("25")
        assert await orchestrator.poll_once() == 1

        bridge.finish("ex-leg1", "0.98", tx_to="sol-payout")
        assert await orchestrator.poll_once() == 1

        op = await _operation(session_factory, op.id)
        assert op.status == BridgeStatus.FINISHED
        assert await get_balance(session_factory, wallet_id) == Decimal("10.98")
        tx = await _operation_tx(session_factory, op.id)
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.amount == Decimal("0.98")
        assert tx.chain_reference == "sol-payout"
        notifier.notify_bridge_finished.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_recovered_deposit_failure_records_transaction(
        self, orchestrator, bridge, relay, session_factory, wallet_id
    ):
        async with atomic(session_factory) as session:
            op = await LedgerRepository(session).create_operation(
                wallet_id, BridgeDirection.DEPOSIT, Decimal("1"), None, None
            )
        relay.get_balance.return_value = Decimal("25")
        await orchestrator.poll_once()

        bridge.fail("ex-leg1", ExchangeState.EXPIRED)
        assert await orchestrator.poll_once() == 1

        op = await _operation(session_factory, op.id)
        assert op.status == BridgeStatus.FAILED
        assert await get_balance(session_factory, wallet_id) == Decimal("10")
        tx = await _operation_tx(session_factory, op.id)
        assert tx.status == TransactionStatus.FAILED


class TestWithdrawal:
    """Withdrawals debit at reservation and refund on failure."""

    @pytest.mark.asyncio
    async def test_withdrawal_funds_leg1(self, orchestrator, bridge, router, session_factory, wallet_id):
        receipt = await orchestrator.initiate_withdrawal(OWNER, wallet_id, "2", DESTINATION)

        assert receipt.deposit_address is None
        assert await get_balance(session_factory, wallet_id) == Decimal("8")
        router.send.assert_awaited_once_with("sol-deposit-1", Decimal("2"))
        op = await _operation(session_factory, 1)
        assert op.leg1_send_ref == "sol-send-1"
        assert op.destination_address == DESTINATION

    @pytest.mark.asyncio
    async def test_full_withdrawal(self, orchestrator, bridge, relay, session_factory, wallet_id, notifier):
        await orchestrator.initiate_withdrawal(OWNER, wallet_id, "2", DESTINATION)
        bridge.finish("ex-leg1", "1000")
        await orchestrator.poll_once()

        assert bridge.created[1] == ("TRX", "SOL", Decimal("998"), DESTINATION)

        bridge.finish("ex-leg2", "1.95", tx_to="sol-payout")
        assert await orchestrator.poll_once() == 1

        op = await _operation(session_factory, 1)
        assert op.status == BridgeStatus.FINISHED
        assert await get_balance(session_factory, wallet_id) == Decimal("8")
        tx = await _operation_tx(session_factory, 1)
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.amount == Decimal("2")

    @pytest.mark.asyncio
    async def test_leg1_failure_refunds_once(self, orchestrator, bridge, session_factory, wallet_id, notifier):
        await orchestrator.initiate_withdrawal(OWNER, wallet_id, "2", DESTINATION)
        bridge.fail("ex-leg1")

        assert await orchestrator.poll_once() == 1
        assert await orchestrator.poll_once() == 0

        assert await get_balance(session_factory, wallet_id) == Decimal("10")
        op = await _operation(session_factory, 1)
        assert op.status == BridgeStatus.FAILED
        assert notifier.notify_bridge_failed.await_args.args[3] is True

    @pytest.mark.asyncio
    async def test_leg2_failure_refunds(self, orchestrator, bridge, session_factory, wallet_id):
        await orchestrator.initiate_withdrawal(OWNER, wallet_id, "2", DESTINATION)
        bridge.finish("ex-leg1", "1000")
        await orchestrator.poll_once()
        bridge.fail("ex-leg2", ExchangeState.FAILED)

        assert await orchestrator.poll_once() == 1
        assert await get_balance(session_factory, wallet_id) == Decimal("10")

    @pytest.mark.asyncio
    async def test_unfunded_leg1_is_retried(self, orchestrator, router, session_factory, wallet_id):
        router.send.side_effect = TransferError("RPC unavailable")
        await orchestrator.initiate_withdrawal(OWNER, wallet_id, "2", DESTINATION)

        op = await _operation(session_factory, 1)
        assert op.leg1_send_ref is None
        assert await get_balance(session_factory, wallet_id) == Decimal("8")

        router.send.side_effect = None
        await orchestrator.poll_once()

        op = await _operation(session_factory, 1)
        assert op.leg1_send_ref == "sol-send-1"
        assert router.send.await_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_funding_error_keeps_receipt(self, orchestrator, router, session_factory, wallet_id):
        router.send.side_effect = RuntimeError("connection reset")

        receipt = await orchestrator.initiate_withdrawal(OWNER, wallet_id, "2", DESTINATION)

        assert receipt.status == BridgeStatus.WAITING_LEG1.value
        op = await _operation(session_factory, 1)
        assert op.leg1_send_ref is None
        assert await get_balance(session_factory, wallet_id) == Decimal("8")

        router.send.side_effect = None
        await orchestrator.poll_once()

        op = await _operation(session_factory, 1)
        assert op.leg1_send_ref == "sol-send-1"

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, orchestrator, bridge, wallet_id):
        with pytest.raises(InsufficientFunds):
            await orchestrator.initiate_withdrawal(OWNER, wallet_id, "11", DESTINATION)
        assert bridge.created == []

    @pytest.mark.asyncio
    async def test_invalid_destination(self, orchestrator, wallet_id):
        with pytest.raises(ValidationError):
            await orchestrator.initiate_withdrawal(OWNER, wallet_id, "1", "1" * 40)

    @pytest.mark.asyncio
    async def test_duplicate_withdrawal(self, orchestrator, wallet_id):
        await orchestrator.initiate_withdrawal(OWNER, wallet_id, "1", DESTINATION)

        with pytest.raises(DuplicatePendingOperation):
            await orchestrator.initiate_withdrawal(OWNER, wallet_id, "1", DESTINATION)


class TestOperationStatus:
    """Tests for operation lookup."""

    @pytest.mark.asyncio
    async def test_status_by_reference(self, orchestrator, wallet_id):
        receipt = await orchestrator.initiate_deposit(OWNER, wallet_id, "1")

        status = await orchestrator.get_operation_status(OWNER, wallet_id, receipt.tracking_ref)

        assert status.status == "waiting_leg1"
        assert status.transaction_status == "pending"
        assert status.deposit_address == "sol-deposit-1"
        assert status.to_dict()["amount"] == "1.000000000"

    @pytest.mark.asyncio
    async def test_unknown_reference(self, orchestrator, wallet_id):
        with pytest.raises(OrderNotFound):
            await orchestrator.get_operation_status(OWNER, wallet_id, "nope")


class TestAddressValidation:
    """Solana destination addresses."""

    def test_valid(self):
        assert validate_solana_address(f" {DESTINATION} ") == DESTINATION

    @pytest.mark.parametrize("address", ["", "1" * 40, "0OIl" * 10])
    def test_invalid(self, address):
        with pytest.raises(ValidationError):
            validate_solana_address(address)
