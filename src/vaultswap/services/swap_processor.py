"""Swap job processor.

Drains the swap job queue: claim, execute once, record the settlement
reference, then settle the ledger or roll the reservation back.

Recovery rules:
- a job left ``processing`` without a settlement reference for longer than
  the stale threshold never reached the gateway and is requeued;
- a job left ``processing`` with a reference was executed and goes straight
  to settlement, never to execution again.
"""

import json
import logging
import os
import socket
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vaultswap.config import Settings, get_settings
from vaultswap.gateways.base import GatewayError, SwapGateway, SwapQuote
from vaultswap.gateways.factory import get_swap_gateway
from vaultswap.ledger.database import atomic, get_session_factory
from vaultswap.ledger.models import SwapDirection, SwapJob, SwapJobStatus
from vaultswap.ledger.repository import LedgerRepository
from vaultswap.ledger.snapshots import PartialRestore, load_snapshot
from vaultswap.notifications.telegram import TelegramNotifier
from vaultswap.utils.amounts import (
    DecimalsError,
    from_base_units,
    validate_base_units,
    validate_decimals,
)
from vaultswap.utils.refs import utcnow

logger = logging.getLogger(__name__)

SOL_DECIMALS = 9


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def validated_quote(job: SwapJob) -> SwapQuote:
    """Parse the job's quote snapshot and check every numeric field.

    Raises:
        DecimalsError: if decimals or an amount is not a finite integer >= 0
        ValueError: if the snapshot is not valid JSON
    """
    validate_decimals(job.decimals)
    quote = SwapQuote.from_dict(json.loads(job.quote_snapshot))
    validate_base_units(quote.in_amount, "inAmount")
    validate_base_units(quote.out_amount, "outAmount")
    return quote


class SwapJobProcessor:
    """Executes queued swaps and commits their outcome exactly once."""

    def __init__(
        self,
        swap_gateway: Optional[SwapGateway] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        notifier: Optional[TelegramNotifier] = None,
        settings: Optional[Settings] = None,
        worker_id: Optional[str] = None,
    ):
        self.gateway = swap_gateway or get_swap_gateway()
        self.session_factory = session_factory or get_session_factory()
        self.notifier = notifier or TelegramNotifier()
        self.settings = settings or get_settings()
        self.worker_id = worker_id or default_worker_id()

    async def requeue_stale(self) -> int:
        """Return crashed pre-execution claims to the queue."""
        cutoff = utcnow() - timedelta(seconds=self.settings.stale_job_seconds)
        async with atomic(self.session_factory) as session:
            count = await LedgerRepository(session).requeue_stale_jobs(cutoff)
        if count:
            logger.warning(f"Requeued {count} stale swap job(s) claimed before {cutoff.isoformat()}")
        return count

    async def process_batch(self) -> int:
        """Requeue stale claims, then handle up to ``swap_batch_size`` jobs.

        Returns:
            Number of jobs that reached a terminal status
        """
        await self.requeue_stale()

        async with atomic(self.session_factory) as session:
            jobs = await LedgerRepository(session).get_runnable_jobs(self.settings.swap_batch_size)
            job_ids = [job.id for job in jobs]

        finished = 0
        for job_id in job_ids:
            try:
                status = await self.process_job(job_id)
            except Exception as e:
                logger.exception(f"Swap job {job_id} errored: {e}")
                continue
            if status is not None:
                finished += 1
        return finished

    async def process_job(self, job_id: int) -> Optional[SwapJobStatus]:
        """Drive one job as far as it can go.

        Returns:
            The terminal status reached, or None if this worker did not
            finish the job (claimed elsewhere, already settled, anomaly)
        """
        async with atomic(self.session_factory) as session:
            job = await LedgerRepository(session).get_swap_job(job_id)

        if job is None:
            return None

        if job.status == SwapJobStatus.PROCESSING and job.settlement_reference:
            logger.info(f"Resuming settlement of swap job {job_id} ({job.settlement_reference})")
            return await self.settle(job_id, job.settlement_reference)

        if job.status != SwapJobStatus.PENDING:
            return None

        async with atomic(self.session_factory) as session:
            claimed = await LedgerRepository(session).claim_job(job_id, self.worker_id)
        if not claimed:
            logger.debug(f"Swap job {job_id} already claimed by another worker")
            return None

        try:
            quote = validated_quote(job)
        except (DecimalsError, ValueError, TypeError, KeyError) as e:
            logger.error(f"Swap job {job_id} has invalid data, failing without execution: {e}")
            return await self.rollback(job_id, f"Invalid swap data: {e}")

        logger.info(f"Executing swap job {job_id}: {job.direction} {job.symbol or job.asset}")
        try:
            reference = await self.gateway.execute(quote)
        except GatewayError as e:
            logger.error(f"Swap job {job_id} execution failed: {e}")
            return await self.rollback(job_id, str(e))

        async with atomic(self.session_factory) as session:
            recorded = await LedgerRepository(session).record_settlement_reference(job_id, reference)

        if not recorded:
            logger.error(
                f"Swap job {job_id} already has a settlement reference; "
                f"abandoning settlement of duplicate execution {reference}"
            )
            async with atomic(self.session_factory) as session:
                await LedgerRepository(session).add_audit_event(
                    "duplicate_settlement_reference",
                    "swap_job",
                    job_id,
                    detail=f"worker={self.worker_id} reference={reference}",
                )
            return None

        return await self.settle(job_id, reference)

    async def settle(self, job_id: int, reference: str) -> Optional[SwapJobStatus]:
        """Commit an executed swap to the ledger."""
        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            job = await repo.get_swap_job(job_id, for_update=True)
            if job is None or not await repo.finish_job(job_id, SwapJobStatus.COMPLETED):
                logger.info(f"Swap job {job_id} already settled")
                return None

            tx = await repo.get_transaction(job.transaction_id)
            quote = SwapQuote.from_dict(json.loads(job.quote_snapshot))
            out_units = validate_base_units(quote.out_amount, "outAmount")

            if job.direction == SwapDirection.BUY:
                received = from_base_units(out_units, validate_decimals(job.decimals))
                await repo.settle_into_holding(
                    job.wallet_id,
                    job.asset,
                    job.symbol,
                    received=received,
                    pending_release=job.asset_amount,
                    cost=job.settlement_amount,
                )
                await repo.complete_transaction(tx.id, amount=received, chain_reference=reference)
                asset_amount, settlement_amount = received, job.settlement_amount
            else:
                received = from_base_units(out_units, SOL_DECIMALS)
                await repo.credit_balance(job.wallet_id, received)
                realized_pnl = received - (tx.cost_basis_at_sale or Decimal("0"))
                await repo.complete_transaction(
                    tx.id,
                    settlement_value=received,
                    realized_pnl=realized_pnl,
                    chain_reference=reference,
                )
                await repo.delete_holding_if_empty(job.wallet_id, job.asset)
                asset_amount, settlement_amount = job.asset_amount, received

            wallet = await repo.get_wallet(job.wallet_id)

        logger.info(
            f"Settled swap job {job_id}: {job.direction} {asset_amount} {job.symbol or job.asset} "
            f"for {settlement_amount} SOL ({reference})"
        )
        chat_id = job.notify_chat_id or (wallet.telegram_chat_id if wallet else None)
        if chat_id:
            await self._notify(
                self.notifier.notify_swap_completed(
                    chat_id,
                    job.direction,
                    job.symbol or job.asset[:8],
                    asset_amount,
                    settlement_amount,
                    reference,
                )
            )
        return SwapJobStatus.COMPLETED

    async def rollback(self, job_id: int, reason: str) -> Optional[SwapJobStatus]:
        """Fail a claimed job and hand its reservation back."""
        async with atomic(self.session_factory) as session:
            repo = LedgerRepository(session)
            job = await repo.get_swap_job(job_id, for_update=True)
            if job is None or not await repo.finish_job(job_id, SwapJobStatus.FAILED, reason):
                return None

            await repo.fail_transaction(job.transaction_id)
            snapshot = load_snapshot(job.restore_snapshot)
            if isinstance(snapshot, PartialRestore):
                await repo.credit_balance(job.wallet_id, snapshot.balance_refund)
                await repo.release_pending_inbound(job.wallet_id, snapshot.asset, snapshot.pending_amount)
                await repo.delete_holding_if_empty(job.wallet_id, snapshot.asset)
            else:
                exact = await repo.restore_holding(job.wallet_id, snapshot)
                if not exact:
                    logger.warning(
                        f"Holding {snapshot.asset} changed since job {job_id} was reserved; "
                        f"restored {snapshot.amount_reserved} by delta"
                    )

            wallet = await repo.get_wallet(job.wallet_id)

        logger.info(f"Rolled back swap job {job_id}: {reason}")
        chat_id = job.notify_chat_id or (wallet.telegram_chat_id if wallet else None)
        if chat_id:
            await self._notify(
                self.notifier.notify_swap_failed(chat_id, job.direction, job.symbol or job.asset[:8], reason)
            )
        return SwapJobStatus.FAILED

    async def _notify(self, coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(f"Notification failed: {e}")
