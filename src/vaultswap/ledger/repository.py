"""Repository for ledger operations.

Every mutation that must happen at most once is a guarded conditional update:
the WHERE clause carries the precondition and the returned row count says
whether it held. Methods that perform one return ``bool``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vaultswap.ledger.models import (
    AMOUNT,
    AMOUNT_SCALE,
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
from vaultswap.ledger.snapshots import FullRestore
from vaultswap.utils.refs import generate_tracking_ref, utcnow

SEND_LOCK_MARKER = "PROCESSING"
SEND_MARKER_FIELDS = ("leg1_send_ref", "leg2_send_ref")


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _guarded(self, stmt) -> bool:
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount > 0

    # Wallet operations
    async def create_wallet(
        self,
        address: str,
        owner_ref: str,
        label: Optional[str] = None,
        initial_balance: Decimal = Decimal("0"),
        telegram_chat_id: Optional[int] = None,
    ) -> Wallet:
        """Create a wallet together with its balance row."""
        wallet = Wallet(
            address=address,
            owner_ref=owner_ref,
            label=label,
            telegram_chat_id=telegram_chat_id,
        )
        self.session.add(wallet)
        await self.session.flush()

        self.session.add(Balance(wallet_id=wallet.id, amount=initial_balance))
        await self.session.flush()
        return wallet

    async def get_wallet(self, wallet_id: int) -> Optional[Wallet]:
        """Get wallet by ID."""
        stmt = select(Wallet).where(Wallet.id == wallet_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # Balance operations
    async def get_balance(self, wallet_id: int, for_update: bool = False) -> Optional[Balance]:
        """Get the settlement-currency balance of a wallet."""
        stmt = (
            select(Balance)
            .where(Balance.wallet_id == wallet_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def credit_balance(self, wallet_id: int, amount: Decimal) -> None:
        """Atomically add amount to a wallet balance."""
        stmt = (
            update(Balance)
            .where(Balance.wallet_id == wallet_id)
            .values(amount=Balance.amount + amount)
        )
        if not await self._guarded(stmt):
            raise ValueError(f"No balance row for wallet {wallet_id}")

    async def debit_balance(self, wallet_id: int, amount: Decimal) -> bool:
        """Atomically subtract amount if the balance covers it."""
        stmt = (
            update(Balance)
            .where(Balance.wallet_id == wallet_id, Balance.amount >= amount)
            .values(amount=Balance.amount - amount)
        )
        return await self._guarded(stmt)

    # Holding operations
    async def get_holding(
        self, wallet_id: int, asset: str, for_update: bool = False
    ) -> Optional[Holding]:
        """Get a wallet's holding of an asset."""
        stmt = (
            select(Holding)
            .where(Holding.wallet_id == wallet_id, Holding.asset == asset)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_holding(
        self, wallet_id: int, asset: str, symbol: Optional[str]
    ) -> Holding:
        holding = await self.get_holding(wallet_id, asset, for_update=True)
        if holding is None:
            holding = Holding(
                wallet_id=wallet_id,
                asset=asset,
                symbol=symbol,
                amount=Decimal("0"),
                pending_amount=Decimal("0"),
                total_cost_basis=Decimal("0"),
                average_entry_price=Decimal("0"),
            )
            self.session.add(holding)
            await self.session.flush()
        return holding

    async def add_pending_inbound(
        self, wallet_id: int, asset: str, symbol: Optional[str], amount: Decimal
    ) -> None:
        """Show a reserved buy as a pending position."""
        holding = await self._get_or_create_holding(wallet_id, asset, symbol)
        stmt = (
            update(Holding)
            .where(Holding.id == holding.id)
            .values(pending_amount=Holding.pending_amount + amount)
        )
        await self._guarded(stmt)

    async def debit_holding(self, wallet_id: int, snapshot: FullRestore) -> bool:
        """Write the post-reservation row of a sell if the holding still matches the snapshot.

        Absolute values are written so that a later ``restore_holding`` compares
        against exactly what was stored, never a float-drifted difference.
        """
        if snapshot.amount_after < 0:
            return False
        stmt = (
            update(Holding)
            .where(
                Holding.wallet_id == wallet_id,
                Holding.asset == snapshot.asset,
                func.round(Holding.amount, AMOUNT_SCALE, type_=AMOUNT) == snapshot.amount,
                func.round(Holding.total_cost_basis, AMOUNT_SCALE, type_=AMOUNT) == snapshot.total_cost_basis,
            )
            .values(
                amount=snapshot.amount_after,
                total_cost_basis=snapshot.cost_basis_after,
            )
        )
        return await self._guarded(stmt)

    async def settle_into_holding(
        self,
        wallet_id: int,
        asset: str,
        symbol: Optional[str],
        received: Decimal,
        pending_release: Decimal,
        cost: Decimal,
    ) -> None:
        """Add settled tokens, release the pending amount and update cost basis."""
        holding = await self._get_or_create_holding(wallet_id, asset, symbol)
        await self._guarded(
            update(Holding)
            .where(Holding.id == holding.id)
            .values(
                amount=Holding.amount + received,
                pending_amount=case(
                    (Holding.pending_amount > pending_release,
                     Holding.pending_amount - pending_release),
                    else_=Decimal("0"),
                ),
                total_cost_basis=Holding.total_cost_basis + cost,
            )
        )
        await self._recompute_entry_price(holding.id)

    async def release_pending_inbound(self, wallet_id: int, asset: str, amount: Decimal) -> None:
        """Drop the pending amount of a buy that will not settle."""
        await self._guarded(
            update(Holding)
            .where(Holding.wallet_id == wallet_id, Holding.asset == asset)
            .values(
                pending_amount=case(
                    (Holding.pending_amount > amount, Holding.pending_amount - amount),
                    else_=Decimal("0"),
                )
            )
        )

    async def restore_holding(self, wallet_id: int, snapshot: FullRestore) -> bool:
        """Write back the pre-reservation row of a sell.

        Returns ``True`` when the row was restored verbatim. When the holding
        moved since the reservation (another order settled into it), only the
        reserved tokens and cost basis are added back and ``False`` is returned.
        """
        exact = await self._guarded(
            update(Holding)
            .where(
                Holding.wallet_id == wallet_id,
                Holding.asset == snapshot.asset,
                func.round(Holding.amount, AMOUNT_SCALE, type_=AMOUNT) == snapshot.amount_after,
                func.round(Holding.total_cost_basis, AMOUNT_SCALE, type_=AMOUNT) == snapshot.cost_basis_after,
            )
            .values(
                amount=snapshot.amount,
                total_cost_basis=snapshot.total_cost_basis,
                average_entry_price=snapshot.average_entry_price,
            )
        )
        if exact:
            return True

        holding = await self._get_or_create_holding(wallet_id, snapshot.asset, None)
        await self._guarded(
            update(Holding)
            .where(Holding.id == holding.id)
            .values(
                amount=Holding.amount + snapshot.amount_reserved,
                total_cost_basis=Holding.total_cost_basis + snapshot.cost_basis_reserved,
            )
        )
        await self._recompute_entry_price(holding.id)
        return False

    async def _recompute_entry_price(self, holding_id: int) -> None:
        await self._guarded(
            update(Holding)
            .where(Holding.id == holding_id)
            .values(
                average_entry_price=case(
                    (Holding.amount > 0, Holding.total_cost_basis / Holding.amount),
                    else_=Decimal("0"),
                )
            )
        )

    async def delete_holding_if_empty(self, wallet_id: int, asset: str) -> bool:
        """Delete a fully liquidated holding with nothing pending."""
        stmt = delete(Holding).where(
            Holding.wallet_id == wallet_id,
            Holding.asset == asset,
            Holding.amount <= 0,
            Holding.pending_amount <= 0,
        )
        return await self._guarded(stmt)

    # Transaction operations
    async def create_transaction(
        self,
        wallet_id: int,
        kind: TransactionKind,
        asset: str,
        amount: Decimal,
        settlement_value: Decimal,
        symbol: Optional[str] = None,
        cost_basis_at_sale: Optional[Decimal] = None,
        operation_id: Optional[int] = None,
    ) -> Transaction:
        """Create a pending transaction.

        Raises ``IntegrityError`` on flush if the wallet already has a pending
        transaction of this kind.
        """
        tx = Transaction(
            wallet_id=wallet_id,
            reference=generate_tracking_ref(),
            kind=kind,
            asset=asset,
            symbol=symbol,
            amount=amount,
            settlement_value=settlement_value,
            status=TransactionStatus.PENDING,
            cost_basis_at_sale=cost_basis_at_sale,
            operation_id=operation_id,
        )
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def get_transaction(self, tx_id: int) -> Optional[Transaction]:
        """Get transaction by ID."""
        stmt = (
            select(Transaction)
            .where(Transaction.id == tx_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_transaction_by_reference(
        self, wallet_id: int, reference: str
    ) -> Optional[Transaction]:
        """Get a wallet's transaction by its tracking reference."""
        stmt = (
            select(Transaction)
            .where(Transaction.wallet_id == wallet_id, Transaction.reference == reference)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_operation_transaction(self, operation_id: int) -> Optional[Transaction]:
        """Get the transaction that tracks a bridge operation."""
        stmt = (
            select(Transaction)
            .where(Transaction.operation_id == operation_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_wallet_transactions(self, wallet_id: int, limit: int = 20) -> list[Transaction]:
        """Get recent transactions of a wallet."""
        stmt = (
            select(Transaction)
            .where(Transaction.wallet_id == wallet_id)
            .order_by(Transaction.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def complete_transaction(self, tx_id: int, **values: Any) -> bool:
        """Move a pending transaction to completed."""
        stmt = (
            update(Transaction)
            .where(Transaction.id == tx_id, Transaction.status == TransactionStatus.PENDING)
            .values(status=TransactionStatus.COMPLETED, **values)
        )
        return await self._guarded(stmt)

    async def fail_transaction(self, tx_id: int) -> bool:
        """Move a pending transaction to failed."""
        stmt = (
            update(Transaction)
            .where(Transaction.id == tx_id, Transaction.status == TransactionStatus.PENDING)
            .values(status=TransactionStatus.FAILED)
        )
        return await self._guarded(stmt)

    # Swap job operations
    async def create_swap_job(
        self,
        wallet_id: int,
        transaction_id: int,
        direction: SwapDirection,
        asset: str,
        symbol: Optional[str],
        decimals: int,
        settlement_amount: Decimal,
        asset_amount: Decimal,
        quote_snapshot: str,
        restore_snapshot: str,
        notify_chat_id: Optional[int] = None,
    ) -> SwapJob:
        """Enqueue a swap job in pending status."""
        job = SwapJob(
            wallet_id=wallet_id,
            transaction_id=transaction_id,
            direction=direction,
            asset=asset,
            symbol=symbol,
            decimals=decimals,
            settlement_amount=settlement_amount,
            asset_amount=asset_amount,
            quote_snapshot=quote_snapshot,
            restore_snapshot=restore_snapshot,
            notify_chat_id=notify_chat_id,
            status=SwapJobStatus.PENDING,
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_swap_job(self, job_id: int, for_update: bool = False) -> Optional[SwapJob]:
        """Get swap job by ID."""
        stmt = (
            select(SwapJob)
            .where(SwapJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_job_for_transaction(self, tx_id: int) -> Optional[SwapJob]:
        """Get the swap job created with a transaction."""
        stmt = (
            select(SwapJob)
            .where(SwapJob.transaction_id == tx_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def requeue_stale_jobs(self, cutoff: datetime) -> int:
        """Revert claimed jobs that never recorded a reference to pending."""
        stmt = (
            update(SwapJob)
            .where(
                SwapJob.status == SwapJobStatus.PROCESSING,
                SwapJob.settlement_reference.is_(None),
                SwapJob.claimed_at < cutoff,
            )
            .values(status=SwapJobStatus.PENDING, claimed_at=None, claimed_by=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def get_runnable_jobs(self, limit: int) -> list[SwapJob]:
        """Pending jobs plus executed-but-unsettled jobs, oldest first."""
        stmt = (
            select(SwapJob)
            .where(
                or_(
                    SwapJob.status == SwapJobStatus.PENDING,
                    and_(
                        SwapJob.status == SwapJobStatus.PROCESSING,
                        SwapJob.settlement_reference.is_not(None),
                    ),
                )
            )
            .order_by(SwapJob.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def claim_job(self, job_id: int, worker_id: str) -> bool:
        """Claim a pending job for this worker."""
        stmt = (
            update(SwapJob)
            .where(SwapJob.id == job_id, SwapJob.status == SwapJobStatus.PENDING)
            .values(status=SwapJobStatus.PROCESSING, claimed_at=utcnow(), claimed_by=worker_id)
        )
        return await self._guarded(stmt)

    async def record_settlement_reference(self, job_id: int, reference: str) -> bool:
        """Store the execution reference unless one is already recorded."""
        stmt = (
            update(SwapJob)
            .where(
                SwapJob.id == job_id,
                SwapJob.status == SwapJobStatus.PROCESSING,
                SwapJob.settlement_reference.is_(None),
            )
            .values(settlement_reference=reference)
        )
        return await self._guarded(stmt)

    async def finish_job(
        self,
        job_id: int,
        status: SwapJobStatus,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """Move a processing job to a terminal status."""
        stmt = (
            update(SwapJob)
            .where(SwapJob.id == job_id, SwapJob.status == SwapJobStatus.PROCESSING)
            .values(status=status, failure_reason=failure_reason, completed_at=utcnow())
        )
        return await self._guarded(stmt)

    # Bridge operations
    async def create_operation(
        self,
        wallet_id: int,
        direction: BridgeDirection,
        amount: Decimal,
        leg1_id: Optional[str],
        leg1_deposit_address: Optional[str],
        destination_address: Optional[str] = None,
    ) -> BridgeOperation:
        """Create a bridge operation waiting on its first leg.

        Raises ``IntegrityError`` on flush if the wallet already has an
        in-flight operation in this direction.
        """
        op = BridgeOperation(
            wallet_id=wallet_id,
            direction=direction,
            amount=amount,
            leg1_id=leg1_id,
            leg1_deposit_address=leg1_deposit_address,
            destination_address=destination_address,
            status=BridgeStatus.WAITING_LEG1,
        )
        self.session.add(op)
        await self.session.flush()
        return op

    async def get_operation(self, operation_id: int, for_update: bool = False) -> Optional[BridgeOperation]:
        """Get bridge operation by ID."""
        stmt = (
            select(BridgeOperation)
            .where(BridgeOperation.id == operation_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_operations(
        self, direction: BridgeDirection, limit: int
    ) -> list[BridgeOperation]:
        """Get operations still waiting on a leg, oldest first."""
        stmt = (
            select(BridgeOperation)
            .where(
                BridgeOperation.direction == direction,
                BridgeOperation.status.in_(
                    [BridgeStatus.WAITING_LEG1, BridgeStatus.WAITING_LEG2]
                ),
            )
            .order_by(BridgeOperation.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_active_operation(
        self, wallet_id: int, direction: BridgeDirection
    ) -> Optional[BridgeOperation]:
        """Get the wallet's in-flight operation in one direction, if any."""
        stmt = select(BridgeOperation).where(
            BridgeOperation.wallet_id == wallet_id,
            BridgeOperation.direction == direction,
            BridgeOperation.status.in_([BridgeStatus.WAITING_LEG1, BridgeStatus.WAITING_LEG2]),
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def transition_operation(
        self,
        operation_id: int,
        from_status: BridgeStatus,
        *conditions: Any,
        **values: Any,
    ) -> bool:
        """Update an operation only while it is still in ``from_status``."""
        stmt = (
            update(BridgeOperation)
            .where(
                BridgeOperation.id == operation_id,
                BridgeOperation.status == from_status,
                *conditions,
            )
            .values(**values)
        )
        return await self._guarded(stmt)

    async def acquire_send_lock(
        self, operation_id: int, from_status: BridgeStatus, marker_field: str
    ) -> bool:
        """Set the PROCESSING marker if no send has been recorded yet."""
        column = self._marker_column(marker_field)
        return await self.transition_operation(
            operation_id,
            from_status,
            column.is_(None),
            **{marker_field: SEND_LOCK_MARKER, "send_locked_at": utcnow()},
        )

    async def complete_send(
        self, operation_id: int, marker_field: str, reference: str, **values: Any
    ) -> bool:
        """Replace the PROCESSING marker with the real transfer reference."""
        column = self._marker_column(marker_field)
        stmt = (
            update(BridgeOperation)
            .where(BridgeOperation.id == operation_id, column == SEND_LOCK_MARKER)
            .values(**{marker_field: reference, "send_locked_at": None}, **values)
        )
        return await self._guarded(stmt)

    async def release_send_lock(
        self, operation_id: int, marker_field: str, older_than: Optional[datetime] = None
    ) -> bool:
        """Clear the PROCESSING marker, optionally only when it is older than a cutoff."""
        column = self._marker_column(marker_field)
        conditions = [BridgeOperation.id == operation_id, column == SEND_LOCK_MARKER]
        if older_than is not None:
            conditions.append(BridgeOperation.send_locked_at < older_than)
        stmt = (
            update(BridgeOperation)
            .where(*conditions)
            .values(**{marker_field: None, "send_locked_at": None})
        )
        return await self._guarded(stmt)

    async def update_operation(self, operation_id: int, **values: Any) -> None:
        """Record checkpoint data that does not change the operation status."""
        await self._guarded(
            update(BridgeOperation).where(BridgeOperation.id == operation_id).values(**values)
        )

    @staticmethod
    def _marker_column(marker_field: str):
        if marker_field not in SEND_MARKER_FIELDS:
            raise ValueError(f"Unknown send marker field: {marker_field}")
        return getattr(BridgeOperation, marker_field)

    # Audit operations
    async def add_audit_event(
        self,
        kind: str,
        subject_type: str,
        subject_id: int,
        detail: Optional[str] = None,
    ) -> AuditEvent:
        """Record an event for operator review."""
        event = AuditEvent(
            kind=kind,
            subject_type=subject_type,
            subject_id=subject_id,
            detail=detail,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def get_audit_events(self, kind: Optional[str] = None, limit: int = 100) -> list[AuditEvent]:
        """Get recent audit events, optionally of one kind."""
        stmt = select(AuditEvent).order_by(AuditEvent.id.desc()).limit(limit)
        if kind is not None:
            stmt = stmt.where(AuditEvent.kind == kind)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
