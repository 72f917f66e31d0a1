"""Wires the discovery services together and runs them for the app's lifetime."""

import logging
from contextlib import asynccontextmanager

from sqlalchemy import Engine

from app.core import database
from app.core.config import Settings, get_settings
from app.services.discovery import EpisodeDiscovery
from app.services.episode_status import EpisodeStatusService
from app.services.episode_store import EpisodeStore
from app.services.job_processor import DiscoveryJobProcessor
from app.services.job_queue import DiscoveryQueue
from app.services.omdb import MetadataClient, OMDbClient
from app.services.request_scheduler import RequestScheduler
from app.services.smart_cache import DatabaseCacheBackend, SmartCache

logger = logging.getLogger(__name__)


class DiscoveryRuntime:
    """One instance of every discovery service, sharing a single engine."""

    def __init__(
        self,
        settings: Settings | None = None,
        engine: Engine | None = None,
        client: MetadataClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.engine = engine or database.engine

        self.store = EpisodeStore(self.engine)
        self.queue = DiscoveryQueue(
            self.engine, max_attempts=self.settings.max_job_attempts
        )
        self.cache = SmartCache.from_settings(
            self.settings, backend=DatabaseCacheBackend(self.engine)
        )
        self.scheduler = RequestScheduler.from_settings(self.settings)
        self.client = client or OMDbClient()
        self.discovery = EpisodeDiscovery.from_settings(
            self.settings, self.client, self.scheduler, self.store, cache=self.cache
        )
        self.processor = DiscoveryJobProcessor.from_settings(
            self.settings, self.queue, self.discovery
        )
        self.status = EpisodeStatusService(
            self.store,
            self.queue,
            self.cache,
            default_ttl_days=self.settings.default_ttl_days,
            season_cache_ttl=self.settings.cache_default_ttl,
            processor=self.processor,
        )

    async def start(self) -> None:
        database.create_db_and_tables(self.engine)
        if not self.settings.omdb_api_key:
            logger.warning(
                "OMDB_API_KEY is not set; every episode lookup will fail as a "
                "transient error, so series and season jobs complete with 0 episodes"
            )
        self.scheduler.start()
        self.cache.start()
        self.processor.start()
        logger.info("Discovery services started")

    async def shutdown(self) -> None:
        await self.processor.stop()
        await self.scheduler.shutdown()
        await self.cache.shutdown()
        try:
            await self.client.aclose()
        except Exception as exc:
            logger.error("Error closing metadata client: %s", exc)
        logger.info("Discovery services stopped")


# Global runtime instance
runtime = DiscoveryRuntime()


@asynccontextmanager
async def discovery_lifespan(app):
    """FastAPI lifespan context manager to run the discovery services."""
    await runtime.start()
    try:
        yield
    finally:
        await runtime.shutdown()
