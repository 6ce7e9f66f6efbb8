"""Main application for the Copy Trader."""

import asyncio
import logging
import signal
from typing import Optional

from copytrade_common.util import setup_logging

from .config import ServiceSettings
from .leader_client import DataApiClient
from .service import CopyTraderService
from .sync_server import SyncServer

logger = logging.getLogger(__name__)


class CopyTraderApp:
    """
    Main application that wires everything together.

    Component graph:
    DataApiClient -> AdaptivePoller -> CopyPipeline (Planner -> RiskGovernor -> Recorder)
                                            |
                                            v
    SettlementEngine ---------------> LedgerStore <- SyncServer (reads, token-gated writes)
                                            |
                                            v
                                    Dashboard aggregator
    """

    def __init__(self, settings: ServiceSettings):
        """
        Initialize the application.

        Args:
            settings: Process settings
        """
        self.settings = settings
        settings.validate()

        self.client: Optional[DataApiClient] = None
        self.service: Optional[CopyTraderService] = None
        self.server: Optional[SyncServer] = None

        self._shutdown_event = asyncio.Event()

    def _setup_components(self) -> None:
        """Initialize all components."""
        self.client = DataApiClient(
            base_url=self.settings.data_api_url,
            timeout_seconds=self.settings.fetch_timeout_seconds,
            trades_limit=self.settings.trades_limit,
            closed_positions_limit=self.settings.closed_positions_limit,
        )

        self.service = CopyTraderService(settings=self.settings, source=self.client)

        self.server = SyncServer(
            service=self.service,
            bind_host=self.settings.ui_host,
            port=self.settings.ui_port,
        )

    async def start(self) -> None:
        """Start the application."""
        logger.info("Starting Copy Trader...")

        self._setup_components()
        self.service.open()

        await self.server.start()

        # Printed once; the UI needs it for write requests
        print(f"Copy Trader UI: http://{self.settings.ui_host}:{self.settings.ui_port}")
        print(f"API token: {self.server.token}")

        if self.settings.autostart_poller and self.service.config:
            await self.service.start_poller()

        logger.info("Copy Trader started")

    async def stop(self) -> None:
        """Stop the application."""
        logger.info("Stopping Copy Trader...")

        self._shutdown_event.set()

        if self.server:
            await self.server.stop()
        if self.service:
            await self.service.close()
        if self.client:
            await self.client.close()

        logger.info("Copy Trader stopped")

    async def run(self) -> None:
        """
        Run the application until shutdown signal.
        """
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(self._handle_signal())
            )

        try:
            await self.start()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def _handle_signal(self) -> None:
        """Handle shutdown signal."""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()


def main() -> None:
    """Entry point for the application."""
    settings = ServiceSettings.from_env()

    setup_logging("copy_trader", level=settings.log_level)

    logger.info(f"Starting with data dir: {settings.data_dir}")

    app = CopyTraderApp(settings)
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
