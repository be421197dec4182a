"""Settlement worker.

Drains the swap job queue and advances in-flight bridge operations on a
fixed interval. Several workers may run against the same database.

Usage:
    python -m vaultswap.worker --interval 15
    python -m vaultswap.worker --once
"""

import argparse
import asyncio
import logging
from typing import Optional

from vaultswap.config import get_settings
from vaultswap.ledger.database import close_db, init_db
from vaultswap.notifications.telegram import close_bot
from vaultswap.services.bridge import BridgeOrchestrator
from vaultswap.services.swap_processor import SwapJobProcessor

logger = logging.getLogger(__name__)


class SettlementWorker:
    """Runs the swap processor and bridge orchestrator in one loop."""

    def __init__(
        self,
        processor: Optional[SwapJobProcessor] = None,
        orchestrator: Optional[BridgeOrchestrator] = None,
        interval: Optional[int] = None,
    ):
        self.processor = processor or SwapJobProcessor()
        self.orchestrator = orchestrator or BridgeOrchestrator()
        self.interval = interval or get_settings().poll_interval
        self._stop = asyncio.Event()

    async def run_once(self) -> tuple[int, int]:
        """Run one swap batch and one bridge poll.

        Returns:
            (swap jobs finished, bridge transitions)
        """
        swaps = 0
        transitions = 0
        try:
            swaps = await self.processor.process_batch()
        except Exception as e:
            logger.exception(f"Swap batch failed: {e}")
        try:
            transitions = await self.orchestrator.poll_once()
        except Exception as e:
            logger.exception(f"Bridge poll failed: {e}")

        if swaps or transitions:
            logger.info(f"Cycle done: {swaps} swap(s) finished, {transitions} bridge transition(s)")
        return swaps, transitions

    async def run(self) -> None:
        """Run until stop() is called."""
        logger.info(f"Starting settlement worker {self.processor.worker_id} (interval: {self.interval}s)")
        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Settlement worker stopped")

    def stop(self) -> None:
        self._stop.set()


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run the settlement worker")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between cycles (default: POLL_INTERVAL setting)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one cycle and exit",
    )
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if settings.dry_run:
        logger.warning("DRY_RUN enabled - gateways are simulated")

    await init_db()
    worker = SettlementWorker(interval=args.interval)
    try:
        if args.once:
            swaps, transitions = await worker.run_once()
            print(f"Finished {swaps} swap(s), {transitions} bridge transition(s)")
        else:
            await worker.run()
    finally:
        await close_bot()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
