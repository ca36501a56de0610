"""Sync worker process: queue worker, sync schedule and health endpoint."""

import asyncio
import signal
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from search_sync.config import Settings, get_settings
from search_sync.core.logging import get_logger, setup_logging
from search_sync.dependencies import Pipeline, build_pipeline
from search_sync.schemas.health import HealthVerdict
from search_sync.services.search_index import INDEX_MAPPINGS

logger = get_logger(__name__)

HealthCheckFn = Callable[[], Awaitable[dict[str, Any]]]


class HealthCheckServer:
    """Lightweight HTTP server for the health check endpoint."""

    def __init__(self, port: int = 8080, health_check_fn: HealthCheckFn | None = None):
        """Initialize the health check server.

        Args:
            port: Port to run the server on.
            health_check_fn: Optional coroutine function returning a health dict.
        """
        self.port = port
        self.health_check_fn = health_check_fn or self._default_health_check
        self.runner: web.AppRunner | None = None

    async def _default_health_check(self) -> dict[str, Any]:
        return {"status": HealthVerdict.HEALTHY.value}

    async def _healthz_handler(self, request: web.Request) -> web.Response:
        body = await self.health_check_fn()
        status = 503 if body.get("status") == HealthVerdict.UNHEALTHY.value else 200
        return web.json_response(body, status=status)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._healthz_handler)
        return app

    async def start(self) -> None:
        """Start the health check HTTP server."""
        self.runner = web.AppRunner(self.build_app())
        await self.runner.setup()

        site = web.TCPSite(self.runner, "0.0.0.0", self.port)
        await site.start()
        logger.info(f"Health check server started on port {self.port}")

    async def stop(self) -> None:
        """Stop the health check HTTP server."""
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            logger.info("Health check server stopped")


class SyncWorker:
    """Runs the change queue worker and the incremental sync schedule."""

    def __init__(self, settings: Settings | None = None, pipeline: Pipeline | None = None):
        self.settings = settings or get_settings()
        self.pipeline = pipeline
        self.shutdown_event: asyncio.Event | None = None
        self.health_server = HealthCheckServer(
            port=self.settings.health_port, health_check_fn=self._get_health_status
        )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(sig: int, frame: Any) -> None:
            logger.info(f"Received signal {sig}, initiating graceful shutdown...")
            if self.shutdown_event:
                self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def _get_health_status(self) -> dict[str, Any]:
        if self.pipeline is None:
            return {"status": HealthVerdict.UNHEALTHY.value, "detail": "starting"}
        report = await self.pipeline.orchestrator.health_check()
        return report.model_dump(mode="json")

    async def _ensure_indexes(self, pipeline: Pipeline) -> None:
        index_names = pipeline.transformer.index_names
        mappings = {index_names[kind]: mapping for kind, mapping in INDEX_MAPPINGS.items()}
        if not await pipeline.search_index.ensure_indexes(mappings):
            logger.warning("Some search indexes could not be created; affected records will retry")

    async def start(self) -> None:
        """Start the worker and block until a shutdown signal arrives."""
        setup_logging(self.settings.log_level)
        logger.info(f"Starting {self.settings.app_name} v{self.settings.app_version}...")
        logger.info(f"Environment: {self.settings.environment}")
        logger.info(f"Change queue table: {self.settings.change_queue_table}")

        self.shutdown_event = asyncio.Event()
        self._setup_signal_handlers()

        try:
            if self.pipeline is None:
                self.pipeline = await build_pipeline(self.settings)
            await self._ensure_indexes(self.pipeline)

            await self.pipeline.worker.start()
            if self.settings.sync_enabled:
                await self.pipeline.orchestrator.start()
            await self.health_server.start()

            logger.info("Worker started. Polling for changes...")
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Worker task cancelled")
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Stopping worker...")
        await self.health_server.stop()

        if self.pipeline is not None:
            await self.pipeline.orchestrator.stop()
            await self.pipeline.worker.stop(timeout=self.settings.worker_shutdown_timeout)
            await self.pipeline.aclose()

        logger.info("Worker stopped")


async def main() -> None:
    """Main entry point for the worker."""
    worker = SyncWorker()
    await worker.start()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
