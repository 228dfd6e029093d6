"""Projectize main entry point and orchestration."""

import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from aiohttp import web

from projectize.config import ProjectizeConfig
from projectize.conversation import ConversationAnalyzer
from projectize.extraction import TaskExtractor
from projectize.logging import LogContext, configure_logging, set_correlation_id
from projectize.matching import DestinationMatcher
from projectize.slack_bot import SlackBot
from projectize.store import create_store
from projectize.sync import DestinationClient
from projectize.validation import RateLimiter
from projectize.workflow import SweepReport, TaskWorkflow

logger = logging.getLogger(__name__)

# Max seconds to wait for a background task to cancel
SHUTDOWN_TIMEOUT = 5


class ProjectizeApp:
    """Wires the store, clients, workflow and Slack bot together."""

    def __init__(self, config: ProjectizeConfig):
        """Initialize the application with configuration.

        Args:
            config: Projectize configuration object.
        """
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.store = create_store(config.store)
        self.extractor = TaskExtractor(config.llm)
        self.destination = DestinationClient.from_config(config.destination)
        self.matcher = DestinationMatcher(project_lookup=self.destination.list_projects)
        self.workflow = TaskWorkflow(
            store=self.store,
            extractor=self.extractor,
            matcher=self.matcher,
            destination=self.destination,
            pacing_delay=config.sweep.entry_delay,
        )
        self.slack = SlackBot(
            config=config.slack,
            workflow=self.workflow,
            extractor=self.extractor,
            analyzer=ConversationAnalyzer(self.extractor),
            rate_limiter=RateLimiter(max_requests=config.extraction_rate_limit),
        )

        self._health_runner: Optional[web.AppRunner] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._last_sweep: Optional[str] = None

    async def run_sweep(self) -> SweepReport:
        """Run one retry sweep."""
        set_correlation_id("sweep")
        with LogContext(component="sweep"):
            report = await self.workflow.process_retry_queue(
                limit=self.config.sweep.batch_size
            )
        self._last_sweep = datetime.now(timezone.utc).isoformat()
        return report

    async def _sweep_loop(self) -> None:
        """Background task that retries failed syncs."""
        logger.info(
            f"Retry sweep started (every {self.config.sweep.interval_seconds}s)"
        )

        while self._running:
            await asyncio.sleep(self.config.sweep.interval_seconds)
            if not self._running:
                break
            try:
                await self.run_sweep()
            except Exception as e:
                logger.exception(f"Retry sweep error: {e}")

        logger.info("Retry sweep stopped")

    def build_health_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        return app

    async def _setup_health_server(self) -> None:
        """Set up health check HTTP server."""
        self._health_runner = web.AppRunner(self.build_health_app())
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, "0.0.0.0", self.config.health_port)
        await site.start()
        logger.info(f"Health check server started on port {self.config.health_port}")

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests."""
        store_health = self.store.health_check()
        return web.json_response(
            {
                "status": "healthy" if store_health["healthy"] else "degraded",
                "storage": store_health,
                "queue": self.store.count_by_status() if store_health["healthy"] else {},
                "last_sweep": self._last_sweep,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            status=200 if store_health["healthy"] else 503,
        )

    async def _shutdown(self) -> None:
        """Perform graceful shutdown."""
        logger.info("Shutting down Projectize...")
        self._running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await asyncio.wait_for(self._sweep_task, timeout=SHUTDOWN_TIMEOUT)
            except asyncio.CancelledError:
                pass
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for sweep task to cancel")

        try:
            await self.slack.stop()
        except Exception as e:
            logger.warning(f"Error stopping Slack bot: {e}")

        for name, closer in (
            ("LLM client", self.extractor.close),
            ("task API client", self.destination.close),
        ):
            try:
                await closer()
            except Exception as e:
                logger.warning(f"Error closing {name}: {e}")

        if self._health_runner:
            try:
                await self._health_runner.cleanup()
            except Exception as e:
                logger.warning(f"Error stopping health server: {e}")

        self._shutdown_event.set()
        logger.info("Projectize shutdown complete")

    def _signal_handler(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        if not self._running:
            logger.warning(f"Received {sig.name} during shutdown, forcing exit...")
            sys.exit(1)

        logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
        asyncio.create_task(self._shutdown())

    async def run(self) -> None:
        """Run until a shutdown signal arrives."""
        logger.info("Starting Projectize...")

        self.config.require_valid()
        for warning in self.config.warnings():
            logger.warning(warning)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._signal_handler(s))

        self._running = True

        await self._setup_health_server()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        await self.slack.start()

        logger.info(
            f"Projectize is running (storage: {self.store.backend_name}, "
            f"data: {Path(self.config.store.path).resolve()})"
        )

        await self._shutdown_event.wait()


async def main() -> None:
    """Main entry point."""
    config = ProjectizeConfig.from_env()
    configure_logging(
        level=config.logging.level,
        json_output=config.logging.json_output,
        log_file=config.logging.file or None,
    )

    app = ProjectizeApp(config)
    await app.run()


if __name__ == "__main__":
    asyncio.run(main())
