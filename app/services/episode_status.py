"""Read path for the UI: series status, cached season episodes, queue status.

Higher-rated series are treated as more stable and keep their cached
episodes longer before a refresh is due.
"""

import logging
import re
from datetime import timedelta

from app.core.exceptions import StoreError
from app.models.media import (
    JOB_PRIORITY_VALUES,
    DiscoveryType,
    Episode,
    JobStatus,
    Priority,
    QueueStatus,
    SeriesStatus,
)
from app.models.tables import (
    DiscoveryJob,
    EpisodeRecord,
    SeriesMetadata,
    as_utc,
    utcnow,
)
from app.services.episode_store import EpisodeStore
from app.services.job_queue import DiscoveryQueue
from app.services.smart_cache import SmartCache

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 7
LOW_RATING_TTL_DAYS = 7

# (minimum rating, TTL in days), checked top to bottom
TTL_TIERS = (
    (8.5, 56),
    (8.0, 42),
    (7.0, 28),
    (6.0, 14),
)


def calculate_ttl(rating: float | None, default_days: int = DEFAULT_TTL_DAYS) -> int:
    """Days a series' cached episodes stay fresh, from its 0-10 rating."""
    if rating is None:
        return default_days
    rating = min(max(rating, 0.0), 10.0)
    for minimum, days in TTL_TIERS:
        if rating >= minimum:
            return days
    return LOW_RATING_TTL_DAYS


def season_cache_key(series_id: str, season_number: int) -> str:
    return f"episodes:{series_id}:{season_number}"


def series_cache_pattern(series_id: str) -> str:
    return rf"^episodes:{re.escape(series_id)}:"


def format_episode(record: EpisodeRecord) -> Episode:
    """Convert a stored record into the display model."""
    return Episode(
        series_id=record.series_id,
        season=record.season_number,
        episode=record.episode_number,
        imdb_id=f"{record.series_id}_S{record.season_number}E{record.episode_number}",
        title=record.title,
        plot=record.plot,
        released=record.air_date.isoformat() if record.air_date else None,
        runtime=f"{record.runtime_minutes} min" if record.runtime_minutes else None,
        imdb_rating=str(record.imdb_rating) if record.imdb_rating is not None else None,
        poster=record.poster_url,
        director=record.director,
        writer=record.writer,
        actors=record.actors,
    )


class EpisodeStatusService:
    """Cache/status façade consumed by the UI layer."""

    def __init__(
        self,
        store: EpisodeStore,
        queue: DiscoveryQueue,
        cache: SmartCache,
        default_ttl_days: int = DEFAULT_TTL_DAYS,
        season_cache_ttl: float = 3600.0,
        processor=None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.cache = cache
        self.default_ttl_days = default_ttl_days
        self.season_cache_ttl = season_cache_ttl
        # Optional DiscoveryJobProcessor, woken up after an enqueue
        self.processor = processor

    # --- Series status ---

    def ttl_days_for(self, metadata: SeriesMetadata) -> int:
        if metadata.calculated_ttl_days:
            return metadata.calculated_ttl_days
        return calculate_ttl(metadata.source_rating, self.default_ttl_days)

    def is_cache_valid(self, metadata: SeriesMetadata) -> bool:
        if metadata.last_discovery_attempt is None:
            return False
        ttl = timedelta(days=self.ttl_days_for(metadata))
        age = utcnow() - as_utc(metadata.last_discovery_attempt)
        is_valid = age < ttl
        logger.debug(
            "Cache validity check for %s: %s (age: %s days, TTL: %s days)",
            metadata.series_id,
            is_valid,
            age.days,
            ttl.days,
        )
        return is_valid

    def get_series_status(self, series_id: str) -> SeriesStatus:
        try:
            metadata = self.store.get_series_metadata(series_id)
            is_being_fetched = self.queue.has_active_job(series_id)
            failed = None if is_being_fetched else self.queue.latest_failed_job(series_id)
        except StoreError as exc:
            logger.error("Error getting series status for %s: %s", series_id, exc)
            return SeriesStatus(cached=False)

        last_error = failed.error_message if failed else None
        if metadata is None:
            return SeriesStatus(
                cached=False, is_being_fetched=is_being_fetched, last_error=last_error
            )

        return SeriesStatus(
            cached=metadata.fully_discovered
            and metadata.total_episodes > 0
            and self.is_cache_valid(metadata),
            total_seasons=metadata.total_seasons,
            total_episodes=metadata.total_episodes,
            last_updated=as_utc(metadata.last_discovery_attempt),
            is_being_fetched=is_being_fetched,
            last_error=last_error,
        )

    # --- Episodes ---

    def get_season_episodes(
        self, series_id: str, season_number: int
    ) -> list[Episode] | None:
        """Cached episodes of a season, or None when nothing is cached yet."""
        key = season_cache_key(series_id, season_number)
        cached = self.cache.get(key)
        if cached is not None:
            episodes = [Episode.model_validate(item) for item in cached]
        else:
            try:
                records = self.store.get_season_episodes(series_id, season_number)
            except StoreError as exc:
                logger.error(
                    "Database error fetching %s S%s: %s", series_id, season_number, exc
                )
                return None
            if not records:
                logger.info(
                    "No episodes found for %s Season %s", series_id, season_number
                )
                return None
            episodes = [format_episode(record) for record in records]
            self.cache.set(
                key,
                [episode.model_dump(mode="json") for episode in episodes],
                ttl=self.season_cache_ttl,
                persist=True,
                priority=Priority.MEDIUM,
            )

        try:
            self.store.touch_season(series_id, season_number)
        except StoreError as exc:
            logger.warning("Could not update access time: %s", exc)

        return episodes

    # --- Enqueueing ---

    def _wake_processor(self) -> None:
        if self.processor is not None:
            self.processor.notify()

    def enqueue_series(
        self,
        series_id: str,
        series_title: str | None = None,
        priority: Priority | str = Priority.MEDIUM,
        requested_by: str | None = None,
    ) -> DiscoveryJob | None:
        """Queue full-series discovery unless it is cached or already running."""
        status = self.get_series_status(series_id)
        if status.cached or status.is_being_fetched:
            logger.info(
                "Series %s already cached or being fetched", series_title or series_id
            )
            return None

        job = self.queue.enqueue(
            series_id,
            series_title=series_title,
            discovery_type=DiscoveryType.FULL_SERIES,
            priority=JOB_PRIORITY_VALUES[Priority(priority)],
            requested_by=requested_by,
        )
        self._wake_processor()
        return job

    def enqueue_season(
        self,
        series_id: str,
        season_number: int,
        series_title: str | None = None,
        priority: Priority | str = Priority.MEDIUM,
        requested_by: str | None = None,
    ) -> DiscoveryJob:
        job = self.queue.enqueue(
            series_id,
            series_title=series_title,
            discovery_type=DiscoveryType.FULL_SEASON,
            season_number=season_number,
            priority=JOB_PRIORITY_VALUES[Priority(priority)],
            requested_by=requested_by,
        )
        self._wake_processor()
        return job

    def enqueue_episode(
        self,
        series_id: str,
        season_number: int,
        episode_number: int,
        series_title: str | None = None,
        priority: Priority | str = Priority.MEDIUM,
        requested_by: str | None = None,
    ) -> DiscoveryJob:
        job = self.queue.enqueue(
            series_id,
            series_title=series_title,
            discovery_type=DiscoveryType.SINGLE_EPISODE,
            season_number=season_number,
            episode_number=episode_number,
            priority=JOB_PRIORITY_VALUES[Priority(priority)],
            requested_by=requested_by,
        )
        self._wake_processor()
        return job

    def force_refresh_series(
        self, series_id: str, series_title: str | None = None
    ) -> DiscoveryJob | None:
        """Drop everything cached for a series and rediscover it at high priority."""
        logger.info("Force refreshing %s", series_title or series_id)
        self.store.delete_series(series_id)
        self.cache.invalidate_pattern(series_cache_pattern(series_id))
        return self.enqueue_series(series_id, series_title, Priority.HIGH)

    # --- Queue ---

    def get_queue_status(self) -> QueueStatus:
        try:
            counts = self.queue.counts()
            processing = self.queue.processing_job()
        except StoreError as exc:
            logger.error("Error getting queue status: %s", exc)
            return QueueStatus(queue_length=0, is_processing=False)

        current = None
        if processing is not None:
            current = processing.series_title or processing.series_id
        elif self.processor is not None and self.processor.current_series:
            current = self.processor.current_series

        return QueueStatus(
            queue_length=counts[JobStatus.QUEUED] + counts[JobStatus.PROCESSING],
            is_processing=current is not None,
            currently_processing=current,
        )

    def clear_all(self) -> None:
        """Wipe cached episodes, series metadata, the job table and the cache."""
        logger.info("Clearing all cache and queue data")
        self.store.clear()
        self.queue.clear()
        self.cache.clear()
