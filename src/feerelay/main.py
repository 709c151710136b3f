"""Process entry point: serves the HTTP API and settles unconfirmed transfers."""

import asyncio
import logging
import signal

import uvicorn

from feerelay.api.app import create_app
from feerelay.config import get_settings
from feerelay.errors import FeeRelayError
from feerelay.ledger.database import close_db, get_session_factory, init_db
from feerelay.services import create_services

logger = logging.getLogger(__name__)


class Application:
    """Runs the API server next to a periodic reconcile loop."""

    def __init__(self):
        self.settings = get_settings()
        self.services = None
        self._stopping = asyncio.Event()

    async def start(self):
        logging.basicConfig(
            level=logging.DEBUG if self.settings.debug else logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        logger.info(
            f"FeeRelay starting ({self.settings.environment}), "
            f"chain {self.settings.chain_id} via {self.settings.rpc_url}"
        )

        await init_db()
        self.services = create_services(self.settings, session_factory=get_session_factory())

        tasks = [asyncio.create_task(self._serve_api(), name="api")]
        if self.services.relay is None:
            logger.warning("No fee payer key configured, relaying is disabled")
        elif self.settings.reconcile_interval > 0:
            tasks.append(asyncio.create_task(self._reconcile_loop(), name="reconcile"))

        await self._stopping.wait()

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._close()

    async def _serve_api(self):
        config = uvicorn.Config(
            create_app(self.services),
            host=self.settings.api_host,
            port=self.settings.api_port,
            log_level="debug" if self.settings.debug else "info",
        )
        logger.info(f"Listening on {self.settings.api_host}:{self.settings.api_port}")
        try:
            await uvicorn.Server(config).serve()
        except asyncio.CancelledError:
            logger.info("API server stopped")
        except Exception as e:
            logger.error(f"API server crashed: {e}")
            raise

    async def _reconcile_loop(self):
        """Re-check PROCESSING transfers every reconcile interval."""
        transfers = self.services.transfers
        try:
            while True:
                await asyncio.sleep(self.settings.reconcile_interval)
                for transfer in await transfers.list_processing():
                    try:
                        await transfers.reconcile_transfer(transfer.id)
                    except FeeRelayError as e:
                        logger.warning(f"Reconcile of {transfer.id} failed: {e.code} {e.message}")
        except asyncio.CancelledError:
            logger.info("Reconcile loop stopped")

    async def _close(self):
        if self.services:
            await self.services.close()
        await close_db()
        logger.info("FeeRelay stopped")

    def stop(self):
        logger.info("Stop requested")
        self._stopping.set()


def main():
    app = Application()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.stop)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
