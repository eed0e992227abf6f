"""Main entry point - runs the queue workers, the API, or both."""

import argparse
import asyncio
import logging
import signal
from typing import Optional

import uvicorn

from ortenberg.api.app import create_app
from ortenberg.components import Components, create_components
from ortenberg.config import get_settings
from ortenberg.queue.worker import Worker

logger = logging.getLogger(__name__)

MODES = ("all", "worker", "api")


class Application:
    """Runs the configured services until a shutdown signal arrives."""

    def __init__(self, mode: str = "all"):
        self.mode = mode
        self.settings = get_settings()
        self.components: Optional[Components] = None
        self.workers: list[Worker] = []
        self.api_server: Optional[uvicorn.Server] = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info(f"Starting Ortenberg ({self.mode})...")
        logger.info(f"Environment: {self.settings.environment}")

        self.components = create_components(self.settings)
        await self.components.database.create_all()
        logger.info("Database initialized")

        tasks = []

        if self.mode in ("all", "worker"):
            for processor in self.components.processors:
                for _ in range(max(self.settings.worker_concurrency, 1)):
                    worker = Worker(
                        self.components.queue,
                        processor,
                        lease_seconds=self.settings.job_lease_seconds,
                        poll_interval=self.settings.queue_poll_interval,
                    )
                    self.workers.append(worker)
                    tasks.append(asyncio.create_task(worker.run()))
            logger.info(f"{len(self.workers)} worker loops started")

        if self.mode in ("all", "api"):
            tasks.append(asyncio.create_task(self._run_api()))
            logger.info("API task created")

        await self._shutdown_event.wait()

        # Let workers finish their current attempt within one lease period
        for worker in self.workers:
            worker.stop()
        if self.api_server is not None:
            self.api_server.should_exit = True

        _, pending = await asyncio.wait(tasks, timeout=self.settings.job_lease_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        await self._cleanup()

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app(self.components)
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            self.api_server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await self.api_server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
            raise
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")
        if self.components is not None:
            await self.components.close()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Ortenberg withdrawal activation service")
    parser.add_argument(
        "mode",
        nargs="?",
        default="all",
        choices=MODES,
        help="Services to run (default: all)",
    )
    args = parser.parse_args()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = Application(mode=args.mode)

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
