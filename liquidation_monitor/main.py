"""Main entry point for the liquidation monitor.

This module initializes and runs all application components:
- Price feed aggregator (stream with polling fallback)
- Opportunity scanner and executor
- HTTP interface with Prometheus metrics

Usage:
    python -m liquidation_monitor.main
"""

import asyncio
import logging
import signal

from liquidation_monitor.api.server import run_api_server
from liquidation_monitor.config import get_settings
from liquidation_monitor.core.engine import MonitoringEngine

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)


async def main():
    logger.info("Starting liquidation monitor...")
    settings = get_settings()

    engine = MonitoringEngine(settings)
    await engine.start()

    api_runner = await run_api_server(
        engine,
        host=settings.api_host,
        port=settings.api_port,
    )

    # Setup graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    logger.info("Monitor running. Press Ctrl+C to stop.")
    await shutdown_event.wait()

    logger.info("Shutting down...")
    await api_runner.cleanup()
    await engine.stop()

    logger.info("Shutdown complete")


def main_sync():
    asyncio.run(main())


if __name__ == "__main__":
    main_sync()
