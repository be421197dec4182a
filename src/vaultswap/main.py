"""Main entry point - runs both the API and the settlement worker."""

import asyncio
import logging
import signal

import uvicorn

from vaultswap.api.app import create_app
from vaultswap.config import get_settings
from vaultswap.ledger.database import close_db, init_db
from vaultswap.notifications.telegram import close_bot
from vaultswap.worker import SettlementWorker

logger = logging.getLogger(__name__)


class Application:
    """Main application that runs both the API and the worker."""

    def __init__(self):
        self.settings = get_settings()
        self.worker = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting VaultSwap...")
        logger.info(f"Environment: {self.settings.environment}")
        logger.info(f"Settings: {self.settings.get_safe_dict()}")

        await init_db()
        logger.info("Database initialized")

        self.worker = SettlementWorker()
        tasks = [
            asyncio.create_task(self._run_api()),
            asyncio.create_task(self._run_worker()),
        ]
        logger.info("API and worker tasks created")

        await self._shutdown_event.wait()

        self.worker.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self._cleanup()

    async def _run_worker(self):
        """Run the settlement worker loop."""
        try:
            await self.worker.run()
        except asyncio.CancelledError:
            logger.info("Worker cancelled")
        except Exception as e:
            logger.error(f"Worker error: {e}")
            raise

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app()
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")
        await close_bot()
        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    app = Application()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
