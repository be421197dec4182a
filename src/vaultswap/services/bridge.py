"""Bridge step orchestrator.

Deposits and withdrawals cross the bridge in two legs through TRX:

    deposit:    user SOL -> leg 1 -> relay TRX -> leg 2 -> router SOL, balance credited
    withdrawal: balance debited, router SOL -> leg 1 -> relay TRX -> leg 2 -> user SOL

Each operation moves ``waiting_leg1 -> waiting_leg2 -> finished`` (or
``failed`` from either waiting state) as the gateway reports progress.
Outbound sends are guarded by a PROCESSING marker taken with a conditional
update, so only one worker ever sends for a given leg.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from bip_utils import Base58Decoder
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vaultswap.config import Settings, get_settings
from vaultswap.errors import (
    BridgeUnavailable,
    DuplicatePendingOperation,
    InsufficientFunds,
    OrderNotFound,
    ValidationError,
)
from vaultswap.gateways.base import (
    BridgeGateway,
    ChainTransfer,
    ExchangeState,
    GatewayError,
    TransferError,
)
from vaultswap.gateways.factory import (
    get_bridge_gateway,
    get_relay_transfer,
    get_router_transfer,
)
from vaultswap.ledger.database import atomic, get_session_factory
from vaultswap.ledger.models import (
    BridgeDirection,
    BridgeOperation,
    BridgeStatus,
    Transaction,
    TransactionKind,
)
from vaultswap.ledger.repository import SEND_LOCK_MARKER, LedgerRepository
from vaultswap.notifications.telegram import TelegramNotifier
from vaultswap.services.reservation import authorize_wallet, parse_amount
from vaultswap.utils.amounts import quantize_amount
from vaultswap.utils.refs import utcnow

logger = logging.getLogger(__name__)

SETTLEMENT_ASSET = "SOL"
INTERMEDIATE_ASSET = "TRX"
LEG1_MARKER = "leg1_send_ref"
LEG2_MARKER = "leg2_send_ref"


@dataclass
class BridgeReceipt:
    """Returned when a deposit or withdrawal is accepted."""

    tracking_ref: str
    direction: BridgeDirection
    amount: Decimal
    status: str
    deposit_address: Optional[str] = None  # Where the user sends SOL (deposits only)

    def to_dict(self) -> dict:
        return {
            "tracking_ref": self.tracking_ref,
            "direction": self.direction.value,
            "amount": str(self.amount),
            "status": self.status,
            "deposit_address": self.deposit_address,
        }


@dataclass
class OperationStatus:
    """Current state of a bridge operation."""

    tracking_ref: str
    direction: str
    amount: Decimal
    status: str
    transaction_status: str
    settled_amount: Optional[Decimal]
    deposit_address: Optional[str]
    destination_address: Optional[str]
    outbound_reference: Optional[str]
    failure_reason: Optional[str]
    leg1_completed_at: Optional[datetime]
    leg2_completed_at: Optional[datetime]

    def to_dict(self) -> dict:
        return {
            "tracking_ref": self.tracking_ref,
            "direction": self.direction,
            "amount": str(self.amount),
            "status": self.status,
            "transaction_status": self.transaction_status,
            "settled_amount": str(self.settled_amount) if self.settled_amount is not None else None,
            "deposit_address": self.deposit_address,
            "destination_address": self.destination_address,
            "outbound_reference": self.outbound_reference,
            "failure_reason": self.failure_reason,
            "leg1_completed_at": self.leg1_completed_at.isoformat() if self.leg1_completed_at else None,
            "leg2_completed_at": self.leg2_completed_at.isoformat() if self.leg2_completed_at else None,
        }


def validate_solana_address(address: str) -> str:
    """Check that an address decodes to a 32-byte public key."""
    address = (address or "").strip()
    try:
        decoded = Base58Decoder.Decode(address)
    except ValueError:
        raise ValidationError(f"Invalid Solana address: {address!r}") from None
    if len(decoded) != 32:
        raise ValidationError(f"Invalid Solana address: {address!r}")
    return address


class BridgeOrchestrator:
    """Initiates bridge operations and advances them by polling."""

    def __init__(
        self,
        bridge_gateway: Optional[BridgeGateway] = None,
        router_transfer: Optional[ChainTransfer] = None,
        relay_transfer: Optional[ChainTransfer] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        notifier: Optional[TelegramNotifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.bridge = bridge_gateway or get_bridge_gateway()
        self.router = router_transfer or get_router_transfer()
        self.relay = relay_transfer or get_relay_transfer()
        self.session_factory = session_factory or get_session_factory()
        self.notifier = notifier or TelegramNotifier()
        self.settings = settings or get_settings()

    # Initiation
    def _bridge_amount(self, value) -> Decimal:
        amount = quantize_amount(parse_amount(value))
        if amount < self.settings.min_bridge_amount:
            raise ValidationError(f"Minimum amount is {self.settings.min_bridge_amount} SOL")
        return amount

    async def _check_no_active(self, repo: LedgerRepository, wallet_id: int, direction: BridgeDirection) -> None:
        active = await repo.get_active_operation(wallet_id, direction)
        if active is not None:
            raise DuplicatePendingOperation(f"You already have a {direction.value} in progress")

    async def _create_leg1(self, amount: Decimal):
        try:
            return await self.bridge.create_exchange(
                SETTLEMENT_ASSET, INTERMEDIATE_ASSET, amount, self.relay.address
            )
        except GatewayError as e:
            logger.error(f"Leg 1 exchange creation failed: {e}")
            raise BridgeUnavailable(str(e)) from e

    async def initiate_deposit(self, owner_ref: str, wallet_id: int, amount) -> BridgeReceipt:
        """Open a deposit: the user funds the returned leg-1 address with SOL.

        Raises:
            ValidationError, UnauthorizedWallet, DuplicatePendingOperation,
            BridgeUnavailable
        """
        amount = self._bridge_amount(amount)

        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            await authorize_wallet(repo, owner_ref, wallet_id)
            await self._check_no_active(repo, wallet_id, BridgeDirection.DEPOSIT)

        exchange = await self._create_leg1(amount)

        try:
            async with atomic(self.session_factory) as session:
                repo = LedgerRepository(session)
                op = await repo.create_operation(
                    wallet_id,
                    BridgeDirection.DEPOSIT,
                    amount,
                    leg1_id=exchange.exchange_id,
                    leg1_deposit_address=exchange.deposit_address,
                )
                tx = await repo.create_transaction(
                    wallet_id,
                    TransactionKind.DEPOSIT,
                    SETTLEMENT_ASSET,
                    amount=amount,
                    settlement_value=amount,
                    symbol=SETTLEMENT_ASSET,
                    operation_id=op.id,
                )
                reference = tx.reference
        except IntegrityError:
            raise DuplicatePendingOperation("You already have a deposit in progress") from None

        logger.info(f"Deposit {op.id} opened: {amount} SOL via exchange {exchange.exchange_id}")
        return BridgeReceipt(
            tracking_ref=reference,
            direction=BridgeDirection.DEPOSIT,
            amount=amount,
            status=BridgeStatus.WAITING_LEG1.value,
            deposit_address=exchange.deposit_address,
        )

    async def initiate_withdrawal(
        self, owner_ref: str, wallet_id: int, amount, destination_address: str
    ) -> BridgeReceipt:
        """Reserve balance and start paying SOL out to ``destination_address``.

        Raises:
            ValidationError, UnauthorizedWallet, InsufficientFunds,
            DuplicatePendingOperation, BridgeUnavailable
        """
        amount = self._bridge_amount(amount)
        destination_address = validate_solana_address(destination_address)

        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            await authorize_wallet(repo, owner_ref, wallet_id)
            await self._check_no_active(repo, wallet_id, BridgeDirection.WITHDRAWAL)
            balance = await repo.get_balance(wallet_id)
            if balance is None or balance.amount < amount:
                raise InsufficientFunds(f"Insufficient SOL balance for {amount} SOL")

        exchange = await self._create_leg1(amount)

        try:
            async with atomic(self.session_factory) as session:
                repo = LedgerRepository(session)
                op = await repo.create_operation(
                    wallet_id,
                    BridgeDirection.WITHDRAWAL,
                    amount,
                    leg1_id=exchange.exchange_id,
                    leg1_deposit_address=exchange.deposit_address,
                    destination_address=destination_address,
                )
                tx = await repo.create_transaction(
                    wallet_id,
                    TransactionKind.WITHDRAW,
                    SETTLEMENT_ASSET,
                    amount=amount,
                    settlement_value=amount,
                    symbol=SETTLEMENT_ASSET,
                    operation_id=op.id,
                )
                if not await repo.debit_balance(wallet_id, amount):
                    raise InsufficientFunds(f"Insufficient SOL balance for {amount} SOL")
                reference = tx.reference
                operation_id = op.id
        except IntegrityError:
            raise DuplicatePendingOperation("You already have a withdrawal in progress") from None

        logger.info(f"Withdrawal {operation_id} opened: {amount} SOL to {destination_address}")
        # Funding leg 1 is retried by the poll loop if it fails here
        await self.fund_leg1(operation_id)

        return BridgeReceipt(
            tracking_ref=reference,
            direction=BridgeDirection.WITHDRAWAL,
            amount=amount,
            status=BridgeStatus.WAITING_LEG1.value,
        )

    async def get_operation_status(
        self, owner_ref: str, wallet_id: int, tracking_ref: str
    ) -> OperationStatus:
        """Look up a deposit or withdrawal by its tracking reference."""
        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            await authorize_wallet(repo, owner_ref, wallet_id)
            tx = await repo.get_transaction_by_reference(wallet_id, tracking_ref)
            if tx is None or tx.operation_id is None:
                raise OrderNotFound(f"No deposit or withdrawal with reference {tracking_ref}")
            op = await repo.get_operation(tx.operation_id)

        return OperationStatus(
            tracking_ref=tx.reference,
            direction=op.direction,
            amount=op.amount,
            status=op.status,
            transaction_status=tx.status,
            settled_amount=op.settled_amount,
            deposit_address=op.leg1_deposit_address if op.direction == BridgeDirection.DEPOSIT else None,
            destination_address=op.destination_address,
            outbound_reference=op.outbound_reference,
            failure_reason=op.failure_reason,
            leg1_completed_at=op.leg1_completed_at,
            leg2_completed_at=op.leg2_completed_at,
        )

    # Polling
    async def poll_once(self) -> int:
        """Advance deposits, then withdrawals. Returns number of transitions."""
        return await self.process_deposits() + await self.process_withdrawals()

    async def process_deposits(self) -> int:
        return await self._process_direction(BridgeDirection.DEPOSIT)

    async def process_withdrawals(self) -> int:
        return await self._process_direction(BridgeDirection.WITHDRAWAL)

    async def _process_direction(self, direction: BridgeDirection) -> int:
        async with atomic(self.session_factory) as session:
            ops = await LedgerRepository(session).get_active_operations(
                direction, self.settings.bridge_batch_size
            )
            op_ids = [op.id for op in ops]

        transitions = 0
        for op_id in op_ids:
            try:
                status = await self.process_operation(op_id)
            except Exception as e:
                logger.exception(f"Bridge operation {op_id} errored: {e}")
                continue
            if status is not None:
                transitions += 1
        return transitions

    async def process_operation(self, operation_id: int) -> Optional[BridgeStatus]:
        """Poll the active leg of an operation and advance it if possible.

        Returns:
            The status the operation moved to, or None if it did not move
        """
        async with atomic(self.session_factory) as session:
            op = await LedgerRepository(session).get_operation(operation_id)

        if op is None:
            return None
        if op.status == BridgeStatus.WAITING_LEG1:
            return await self._advance_leg1(op)
        if op.status == BridgeStatus.WAITING_LEG2:
            return await self._advance_leg2(op)
        return None

    async def _advance_leg1(self, op: BridgeOperation) -> Optional[BridgeStatus]:
        await self._release_stale_locks(op)

        if op.leg1_id is None:
            if op.direction == BridgeDirection.DEPOSIT:
                return await self._recover_from_relay_balance(op)
            logger.error(f"Withdrawal {op.id} has no leg 1 exchange")
            return None

        try:
            status = await self.bridge.get_status(op.leg1_id)
        except GatewayError as e:
            logger.warning(f"Leg 1 status of operation {op.id} unavailable: {e}")
            return None

        if status.status == ExchangeState.FINISHED:
            if not status.amount_received or status.amount_received <= 0:
                logger.warning(f"Leg 1 of operation {op.id} finished without an amount")
                return None
            logger.info(f"Leg 1 of operation {op.id} finished: {status.amount_received} TRX")
            return await self._send_leg2(op, status.amount_received)

        if status.status.is_failure:
            return await self._fail(op, BridgeStatus.WAITING_LEG1, f"Leg 1 {status.status.value}")

        if (
            op.direction == BridgeDirection.WITHDRAWAL
            and status.status == ExchangeState.WAITING
            and not status.tx_from
            and op.leg1_send_ref is None
        ):
            await self.fund_leg1(op.id)
        return None

    async def _advance_leg2(self, op: BridgeOperation) -> Optional[BridgeStatus]:
        if op.leg2_id is None:
            logger.error(f"Operation {op.id} is waiting on leg 2 without an exchange")
            return None

        try:
            status = await self.bridge.get_status(op.leg2_id)
        except GatewayError as e:
            logger.warning(f"Leg 2 status of operation {op.id} unavailable: {e}")
            return None

        if status.status == ExchangeState.FINISHED:
            return await self._finish(op, status.amount_received, status.tx_to)
        if status.status.is_failure:
            return await self._fail(op, BridgeStatus.WAITING_LEG2, f"Leg 2 {status.status.value}")
        return None

    # Outbound sends
    async def _release_stale_locks(self, op: BridgeOperation) -> None:
        cutoff = utcnow() - timedelta(seconds=self.settings.send_lock_timeout_seconds)
        for marker in (LEG1_MARKER, LEG2_MARKER):
            if getattr(op, marker) != SEND_LOCK_MARKER:
                continue
            async with atomic(self.session_factory) as session:
                repo = LedgerRepository(session)
                released = await repo.release_send_lock(op.id, marker, older_than=cutoff)
                if released:
                    await repo.add_audit_event(
                        "send_lock_released",
                        "bridge_operation",
                        op.id,
                        detail=f"{marker} lock older than {self.settings.send_lock_timeout_seconds}s",
                    )
            if released:
                logger.warning(f"Released abandoned {marker} lock on operation {op.id}")
                setattr(op, marker, None)

    async def fund_leg1(self, operation_id: int) -> bool:
        """Send a withdrawal's SOL to its leg-1 deposit address, once."""
        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            acquired = await repo.acquire_send_lock(operation_id, BridgeStatus.WAITING_LEG1, LEG1_MARKER)
            op = await repo.get_operation(operation_id)
        if not acquired:
            return False

        reference = None
        try:
            reference = await self.router.send(op.leg1_deposit_address, op.amount)
        except GatewayError as e:
            logger.error(f"Funding leg 1 of withdrawal {operation_id} failed: {e}")
        except Exception:
            logger.exception(f"Unexpected error funding leg 1 of withdrawal {operation_id}")
        if reference is None:
            async with atomic(self.session_factory) as session:
                await LedgerRepository(session).release_send_lock(operation_id, LEG1_MARKER)
            return False

        async with atomic(self.session_factory) as session:
            stored = await LedgerRepository(session).complete_send(operation_id, LEG1_MARKER, reference)
        if not stored:
            logger.error(f"Leg 1 lock of withdrawal {operation_id} was lost after sending {reference}")
        logger.info(f"Funded leg 1 of withdrawal {operation_id}: {reference}")
        return True

    async def _send_leg2(self, op: BridgeOperation, intermediate: Decimal) -> Optional[BridgeStatus]:
        """Create (or reuse) the leg-2 exchange and send the intermediate TRX to it."""
        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            acquired = await repo.acquire_send_lock(op.id, BridgeStatus.WAITING_LEG1, LEG2_MARKER)
            if acquired:
                op = await repo.get_operation(op.id)
        if not acquired:
            return None

        send_amount = intermediate - self.settings.tron_fee_reserve
        reference = None
        try:
            if send_amount <= 0:
                raise TransferError(
                    f"{intermediate} TRX does not cover the {self.settings.tron_fee_reserve} TRX fee reserve"
                )

            leg2_id, leg2_address = op.leg2_id, op.leg2_deposit_address
            if leg2_id is not None:
                reference = await self._leg2_inbound_reference(leg2_id)
            if reference is not None:
                logger.warning(
                    f"Leg 2 exchange {leg2_id} of operation {op.id} already received {reference}; "
                    f"not sending again"
                )
            else:
                if leg2_id is None:
                    payout = self.router.address if op.direction == BridgeDirection.DEPOSIT else op.destination_address
                    exchange = await self.bridge.create_exchange(
                        INTERMEDIATE_ASSET, SETTLEMENT_ASSET, send_amount, payout
                    )
                    leg2_id, leg2_address = exchange.exchange_id, exchange.deposit_address
                    async with atomic(self.session_factory) as session:
                        await LedgerRepository(session).update_operation(
                            op.id,
                            leg2_id=leg2_id,
                            leg2_deposit_address=leg2_address,
                            intermediate_amount=intermediate,
                        )

                reference = await self.relay.send(leg2_address, send_amount)
        except GatewayError as e:
            logger.error(f"Leg 2 of operation {op.id} not funded, will retry: {e}")
        except Exception:
            logger.exception(f"Unexpected error funding leg 2 of operation {op.id}")
        if reference is None:
            async with atomic(self.session_factory) as session:
                await LedgerRepository(session).release_send_lock(op.id, LEG2_MARKER)
            return None

        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            advanced = await repo.complete_send(
                op.id,
                LEG2_MARKER,
                reference,
                status=BridgeStatus.WAITING_LEG2,
                intermediate_amount=intermediate,
                leg1_completed_at=utcnow(),
            )
            if not advanced:
                await repo.add_audit_event(
                    "send_lock_lost",
                    "bridge_operation",
                    op.id,
                    detail=f"leg 2 sent as {reference} after the lock was released",
                )

        if not advanced:
            logger.error(f"Leg 2 lock of operation {op.id} was lost after sending {reference}")
            return None

        logger.info(f"Operation {op.id} waiting on leg 2: sent {send_amount} TRX ({reference})")
        return BridgeStatus.WAITING_LEG2

    async def _leg2_inbound_reference(self, leg2_id: str) -> Optional[str]:
        """Inbound send already seen by a recorded leg-2 exchange, if any."""
        status = await self.bridge.get_status(leg2_id)
        if status.tx_from:
            return status.tx_from
        if status.status != ExchangeState.WAITING:
            return f"{leg2_id}:{status.status.value}"
        return None

    async def _recover_from_relay_balance(self, op: BridgeOperation) -> Optional[BridgeStatus]:
        """Treat relay wallet funds as the missing leg-1 proceeds of a deposit.

        This is a heuristic: with several stuck deposits the funds may belong
        to another one. Every use is recorded as an audit event.
        """
        try:
            balance = await self.relay.get_balance()
        except GatewayError as e:
            logger.warning(f"Relay balance unavailable for recovery of deposit {op.id}: {e}")
            return None

        if balance < self.settings.recovery_min_intermediate:
            return None

        logger.warning(
            f"Deposit {op.id} has no leg 1 exchange; assuming relay balance "
            f"{balance} TRX is its leg-1 proceeds"
        )
        if not op.recovered:
            async with atomic(self.session_factory) as session:
                repo = LedgerRepository(session)
                await repo.update_operation(op.id, recovered=True)
                await repo.add_audit_event(
                    "heuristic_deposit_recovery",
                    "bridge_operation",
                    op.id,
                    detail=f"relay balance {balance} TRX attributed to deposit of {op.amount} SOL",
                )
        return await self._send_leg2(op, balance)

    # Terminal transitions
    async def _finish(
        self, op: BridgeOperation, received: Optional[Decimal], payout_ref: Optional[str]
    ) -> Optional[BridgeStatus]:
        if received is None or received <= 0:
            logger.warning(f"Leg 2 of operation {op.id} reported no amount; using requested {op.amount}")
            received = op.amount
        received = quantize_amount(received)

        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            moved = await repo.transition_operation(
                op.id,
                BridgeStatus.WAITING_LEG2,
                status=BridgeStatus.FINISHED,
                settled_amount=received,
                outbound_reference=payout_ref,
                leg2_completed_at=utcnow(),
            )
            if not moved:
                return None

            tx = await self._operation_transaction(repo, op)
            if op.direction == BridgeDirection.DEPOSIT:
                await repo.credit_balance(op.wallet_id, received)
                await repo.complete_transaction(
                    tx.id, amount=received, settlement_value=received, chain_reference=payout_ref
                )
            else:
                await repo.complete_transaction(
                    tx.id, settlement_value=received, chain_reference=payout_ref
                )
            wallet = await repo.get_wallet(op.wallet_id)

        logger.info(f"{op.direction} {op.id} finished: {received} SOL")
        if wallet and wallet.telegram_chat_id:
            await self._notify(
                self.notifier.notify_bridge_finished(
                    wallet.telegram_chat_id, op.direction, received, payout_ref
                )
            )
        return BridgeStatus.FINISHED

    async def _operation_transaction(self, repo: LedgerRepository, op: BridgeOperation) -> Transaction:
        tx = await repo.get_operation_transaction(op.id)
        if tx is not None:
            return tx
        # Operations opened by recovery tooling carry no transaction yet
        logger.warning(f"Operation {op.id} has no transaction; creating one")
        kind = TransactionKind.DEPOSIT if op.direction == BridgeDirection.DEPOSIT else TransactionKind.WITHDRAW
        return await repo.create_transaction(
            op.wallet_id,
            kind,
            SETTLEMENT_ASSET,
            amount=op.amount,
            settlement_value=op.amount,
            symbol=SETTLEMENT_ASSET,
            operation_id=op.id,
        )

    async def _fail(
        self, op: BridgeOperation, from_status: BridgeStatus, reason: str
    ) -> Optional[BridgeStatus]:
        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            moved = await repo.transition_operation(
                op.id, from_status, status=BridgeStatus.FAILED, failure_reason=reason
            )
            if not moved:
                return None

            tx = await self._operation_transaction(repo, op)
            await repo.fail_transaction(tx.id)
            refunded = op.direction == BridgeDirection.WITHDRAWAL
            if refunded:
                await repo.credit_balance(op.wallet_id, op.amount)
            wallet = await repo.get_wallet(op.wallet_id)

        logger.warning(f"{op.direction} {op.id} failed: {reason}" + (" (refunded)" if refunded else ""))
        if wallet and wallet.telegram_chat_id:
            await self._notify(
                self.notifier.notify_bridge_failed(
                    wallet.telegram_chat_id, op.direction, op.amount, refunded
                )
            )
        return BridgeStatus.FAILED

    async def _notify(self, coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(f"Notification failed: {e}")
