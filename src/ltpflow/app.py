"""Starlette application wiring the LTP ingestion service together."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route

from . import __version__
from .batch_writer import BatchWriter
from .config import IngestConfig
from .database import Database
from .message_processor import IngestionDispatcher
from .resolver import TokenResolver
from .subscription_manager import SubscriptionController
from .topic_cache import TopicCache
from .transport import MqttTransport

logger = logging.getLogger(__name__)


class IngestService:
    """Owns every ingestion component and their start/stop ordering."""

    def __init__(
        self,
        config: IngestConfig,
        database: Optional[Database] = None,
        resolver: Optional[TokenResolver] = None,
        transport=None,
    ):
        self.config = config

        self.database = database or Database(config.database_url, pool_size=config.db_pool_size)
        self.topic_cache = TopicCache(self.database)
        self.batch_writer = BatchWriter(
            self.database,
            self.topic_cache,
            batch_size=config.batch_size,
            batch_interval=config.batch_interval,
            flush_timeout=config.flush_timeout,
            retry_attempts=config.flush_retry_attempts,
            spill_path=config.spill_path,
        )
        self.resolver = resolver or TokenResolver(
            config.expiry_dates,
            base_url=config.resolver_base_url,
            timeout=config.resolver_timeout,
            max_connections=config.resolver_max_concurrency,
        )
        self.transport = transport or MqttTransport(
            host=config.mqtt_host,
            port=config.mqtt_port,
            on_message=self._on_message,
            on_connect=self._on_connect,
            username=config.mqtt_username,
            password=config.mqtt_password,
            client_id=config.mqtt_client_id,
            base_reconnect_delay=config.mqtt_reconnect_delay,
            max_reconnect_delay=config.mqtt_max_reconnect_delay,
        )
        self.subscriptions = SubscriptionController(
            self.transport,
            self.resolver,
            indices=config.indices,
            strike_diffs=config.strike_diffs,
            index_prefix=config.index_prefix,
            strike_range=config.strike_range,
            max_concurrency=config.resolver_max_concurrency,
        )
        self.dispatcher = IngestionDispatcher(self.subscriptions, self.batch_writer)

        self._running = False
        self.started_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def _on_message(self, topic: str, payload: bytes) -> None:
        await self.dispatcher.handle(topic, payload)

    async def _on_connect(self, reconnected: bool) -> None:
        if reconnected:
            await self.subscriptions.resubscribe_all()
        # Already-active index topics are skipped
        await self.subscriptions.subscribe_base_instruments()

    async def start(self) -> None:
        """Start storage first, then open the feed."""
        if self._running:
            return

        logger.info("Starting LTP ingestion service...")
        await self.batch_writer.start()
        self.subscriptions.initialize_first_message_tracking()
        self.transport.start()

        self._running = True
        self.started_at = datetime.now()
        logger.info("LTP ingestion service started")

    async def stop(self) -> None:
        """
        Drain in order: stop the feed, stop dispatch and option expansion,
        close the resolver, then flush the tail batch and close storage.
        """
        if not self._running:
            return
        self._running = False

        logger.info("Shutting down LTP ingestion service...")

        try:
            await self.transport.stop()
        except Exception as e:
            logger.warning(f"Error stopping transport: {e}")

        try:
            await self.dispatcher.stop()
        except Exception as e:
            logger.warning(f"Error stopping dispatcher: {e}")

        try:
            await self.resolver.close()
        except Exception as e:
            logger.warning(f"Error closing resolver session: {e}")

        # Must run on every exit path: flushes the tail batch before the pool closes
        await self.batch_writer.shutdown()

        logger.info("LTP ingestion service shut down")

    def get_stats(self) -> Dict[str, Any]:
        runtime_seconds = None
        if self.started_at:
            runtime_seconds = (datetime.now() - self.started_at).total_seconds()

        return {
            "is_running": self._running,
            "runtime_seconds": runtime_seconds,
            "transport": {
                "connected": getattr(self.transport, "is_connected", None),
                "reconnect_attempts": getattr(self.transport, "reconnect_attempts", None),
            },
            "dispatcher": self.dispatcher.get_stats(),
            "subscriptions": self.subscriptions.get_stats(),
            "batch_writer": self.batch_writer.get_stats(),
            "resolver": self.resolver.get_stats(),
            "timestamp": datetime.now().isoformat(),
        }


def create_app(service: Optional[IngestService] = None) -> Starlette:
    """
    Build the Starlette application.

    Args:
        service: Pre-built service; when omitted one is created from the
            environment at startup
    """

    @asynccontextmanager
    async def lifespan(app: Starlette):
        ingest_service = service or IngestService(IngestConfig.from_env())
        app.state.service = ingest_service
        await ingest_service.start()
        try:
            yield
        finally:
            await ingest_service.stop()

    async def health_check(request):
        """Health check endpoint to verify the service is running"""
        ingest_service = getattr(request.app.state, "service", None)
        running = ingest_service is not None and ingest_service.is_running
        return JSONResponse({
            "status": "healthy" if running else "starting",
            "service": "ltpflow",
            "version": __version__
        }, status_code=200 if running else 503)

    async def get_stats(request):
        """Get ingestion statistics for debugging"""
        ingest_service = getattr(request.app.state, "service", None)
        if ingest_service is None:
            return JSONResponse({"error": "service not initialized"}, status_code=503)
        try:
            return JSONResponse(ingest_service.get_stats())
        except Exception as e:
            logger.error(f"Error getting stats: {e}")
            return JSONResponse({"error": str(e)}, status_code=500)

    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/api/stats", get_stats, methods=["GET"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)


app = create_app()
