"""Season/episode discovery: walks a series through the request scheduler.

A series walk probes seasons from 1 upward. Each season is probed episode by
episode until a run of consecutive misses; the walk ends after a run of
consecutive empty seasons. Found episodes are upserted one at a time, so a
crash mid-walk keeps everything discovered so far and a rerun skips seasons
that are already stored.
"""

import logging
from dataclasses import dataclass

from app.core.exceptions import DiscoveryError, StoreError
from app.models.media import (
    DiscoveryType,
    EpisodeData,
    Found,
    NotFound,
    Priority,
    ProviderResult,
    SeriesInfo,
    TransientError,
)
from app.models.tables import DiscoveryJob, utcnow
from app.services import tmdb
from app.services.episode_status import calculate_ttl, season_cache_key
from app.services.episode_store import EpisodeStore
from app.services.omdb import MetadataClient
from app.services.request_scheduler import RequestScheduler
from app.services.smart_cache import SmartCache

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    """Counts collected while running one job."""

    total_seasons: int = 0
    total_episodes: int = 0
    api_calls: int = 0

    def as_progress(self) -> dict:
        return {
            "totalEpisodes": self.total_episodes,
            "totalSeasons": self.total_seasons,
            "apiCalls": self.api_calls,
            "completedAt": utcnow().isoformat(),
        }


class EpisodeDiscovery:
    """Runs discovery jobs against a metadata client."""

    def __init__(
        self,
        client: MetadataClient,
        scheduler: RequestScheduler,
        store: EpisodeStore,
        cache: SmartCache | None = None,
        max_seasons: int = 20,
        max_consecutive_empty_seasons: int = 2,
        max_episodes_per_season: int = 50,
        max_consecutive_episode_failures: int = 3,
        default_ttl_days: int = 7,
        use_tmdb_fallback: bool = True,
    ) -> None:
        self.client = client
        self.scheduler = scheduler
        self.store = store
        self.cache = cache
        self.max_seasons = max_seasons
        self.max_consecutive_empty_seasons = max_consecutive_empty_seasons
        self.max_episodes_per_season = max_episodes_per_season
        self.max_consecutive_episode_failures = max_consecutive_episode_failures
        self.default_ttl_days = default_ttl_days
        self.use_tmdb_fallback = use_tmdb_fallback

    @classmethod
    def from_settings(cls, settings, client, scheduler, store, cache=None):
        return cls(
            client,
            scheduler,
            store,
            cache=cache,
            max_seasons=settings.max_seasons,
            max_consecutive_empty_seasons=settings.max_consecutive_empty_seasons,
            max_episodes_per_season=settings.max_episodes_per_season,
            max_consecutive_episode_failures=settings.max_consecutive_episode_failures,
            default_ttl_days=settings.default_ttl_days,
        )

    async def run(self, job: DiscoveryJob) -> DiscoveryResult:
        """Execute a job and return its counts. Raises on invalid jobs."""
        if job.discovery_type == DiscoveryType.FULL_SERIES:
            return await self.discover_series(job.series_id, job.series_title)

        if job.discovery_type == DiscoveryType.FULL_SEASON:
            if not job.season_number:
                raise DiscoveryError("Season number is required for season discovery")
            return await self.discover_single_season(job.series_id, job.season_number)

        if job.discovery_type == DiscoveryType.SINGLE_EPISODE:
            if not job.season_number or not job.episode_number:
                raise DiscoveryError(
                    "Season and episode numbers are required for single episode discovery"
                )
            return await self.discover_single_episode(
                job.series_id, job.season_number, job.episode_number
            )

        raise DiscoveryError(f"Unknown discovery type: {job.discovery_type}")

    # --- Provider access ---

    async def fetch_episode(
        self,
        series_id: str,
        season: int,
        episode: int,
        result: DiscoveryResult | None = None,
    ) -> ProviderResult:
        """One scheduled provider lookup; exceptions become ``TransientError``."""
        if result is not None:
            result.api_calls += 1
        try:
            return await self.scheduler.submit(
                lambda: self.client.fetch_episode(series_id, season, episode),
                priority=Priority.LOW,
                background=True,
            )
        except Exception as exc:
            logger.error(
                "API error for %s S%sE%s: %s", series_id, season, episode, exc
            )
            return TransientError(message=str(exc))

    async def _series_info(
        self, series_id: str, result: DiscoveryResult
    ) -> SeriesInfo | None:
        result.api_calls += 1
        try:
            info = await self.scheduler.submit(
                lambda: self.client.fetch_series(series_id),
                priority=Priority.LOW,
                background=True,
            )
        except Exception as exc:
            logger.warning("Series lookup failed for %s: %s", series_id, exc)
            info = None

        if (info is None or info.rating is None) and self.use_tmdb_fallback:
            rating = await tmdb.get_series_rating(series_id)
            if rating is not None:
                info = (info or SeriesInfo(series_id=series_id)).model_copy(
                    update={"rating": rating}
                )
        return info

    def _save_episode(self, episode: EpisodeData) -> bool:
        try:
            self.store.upsert_episode(episode)
            return True
        except StoreError as exc:
            logger.error("Error caching episode: %s", exc)
            return False

    def _invalidate_season(self, series_id: str, season: int) -> None:
        if self.cache is not None:
            self.cache.evict(season_cache_key(series_id, season))

    # --- Season walk ---

    async def discover_season(
        self, series_id: str, season: int, result: DiscoveryResult | None = None
    ) -> int:
        """Probe a season episode by episode; returns the number stored."""
        stored = 0
        consecutive_failures = 0

        for episode_number in range(1, self.max_episodes_per_season + 1):
            outcome = await self.fetch_episode(series_id, season, episode_number, result)

            if isinstance(outcome, Found):
                consecutive_failures = 0
                if self._save_episode(outcome.episode):
                    stored += 1
                continue

            consecutive_failures += 1
            if isinstance(outcome, NotFound):
                logger.debug("S%sE%s not found for %s", season, episode_number, series_id)
            else:
                logger.debug(
                    "S%sE%s failed for %s: %s",
                    season,
                    episode_number,
                    series_id,
                    outcome.message,
                )
            if consecutive_failures >= self.max_consecutive_episode_failures:
                logger.info(
                    "Stopping Season %s after %s consecutive failures",
                    season,
                    consecutive_failures,
                )
                break

        if stored:
            self._invalidate_season(series_id, season)
        return stored

    def _sync_series_totals(self, series_id: str, season: int) -> None:
        """Recount a discovered series after a season or episode was added to it."""
        try:
            metadata = self.store.get_series_metadata(series_id)
            if metadata is None:
                return
            self.store.update_series_metadata(
                series_id,
                total_episodes=self.store.count_series_episodes(series_id),
                total_seasons=max(metadata.total_seasons, season),
            )
        except StoreError as exc:
            logger.error("Failed to update totals for %s: %s", series_id, exc)

    async def discover_single_season(
        self, series_id: str, season: int
    ) -> DiscoveryResult:
        result = DiscoveryResult(total_seasons=1)
        existing = self.store.count_season_episodes(series_id, season)
        if existing > 0:
            logger.info("Season %s of %s already cached", season, series_id)
            result.total_episodes = existing
            return result

        result.total_episodes = await self.discover_season(series_id, season, result)
        if result.total_episodes:
            self._sync_series_totals(series_id, season)
        logger.info(
            "Cached Season %s of %s: %s episodes",
            season,
            series_id,
            result.total_episodes,
        )
        return result

    async def discover_single_episode(
        self, series_id: str, season: int, episode: int
    ) -> DiscoveryResult:
        result = DiscoveryResult(total_seasons=1)
        if self.store.get_episode(series_id, season, episode) is not None:
            logger.info("Episode S%sE%s of %s already cached", season, episode, series_id)
            result.total_episodes = 1
            return result

        outcome = await self.fetch_episode(series_id, season, episode, result)
        if isinstance(outcome, Found):
            # A single-episode job has nothing else to salvage; let a failed
            # write fail the job so it can be retried.
            self.store.upsert_episode(outcome.episode)
            self._invalidate_season(series_id, season)
            self._sync_series_totals(series_id, season)
            result.total_episodes = 1
        elif isinstance(outcome, TransientError):
            raise DiscoveryError(
                f"Could not fetch S{season}E{episode} of {series_id}: {outcome.message}"
            )
        return result

    # --- Series walk ---

    async def discover_series(
        self, series_id: str, series_title: str | None = None
    ) -> DiscoveryResult:
        result = DiscoveryResult()
        info = await self._series_info(series_id, result)
        title = series_title or (info.title if info else None) or "Unknown Series"
        rating = info.rating if info else None

        self.store.upsert_series_metadata(
            series_id,
            series_title=title,
            total_seasons=0,
            total_episodes=0,
            source_rating=rating,
            calculated_ttl_days=calculate_ttl(rating, self.default_ttl_days),
            fully_discovered=False,
            last_discovery_attempt=utcnow(),
        )

        consecutive_empty = 0
        for season in range(1, self.max_seasons + 1):
            logger.info("Discovering Season %s for %s", season, title)
            try:
                existing = self.store.count_season_episodes(series_id, season)
                if existing > 0:
                    logger.info(
                        "Season %s already cached (%s episodes)", season, existing
                    )
                    result.total_seasons = season
                    result.total_episodes += existing
                    consecutive_empty = 0
                    continue

                found = await self.discover_season(series_id, season, result)
            except StoreError as exc:
                logger.error("Error discovering Season %s of %s: %s", season, title, exc)
                found = 0

            if found > 0:
                result.total_seasons = season
                result.total_episodes += found
                consecutive_empty = 0
                logger.info("Cached Season %s: %s episodes", season, found)
                self._record_progress(series_id, result)
                continue

            consecutive_empty += 1
            logger.info(
                "Season %s empty (%s/%s)",
                season,
                consecutive_empty,
                self.max_consecutive_empty_seasons,
            )
            if consecutive_empty >= self.max_consecutive_empty_seasons:
                logger.info(
                    "Stopping after %s consecutive empty seasons", consecutive_empty
                )
                break

        try:
            # Stored rows are the source of truth for the final count
            result.total_episodes = self.store.count_series_episodes(series_id)
        except StoreError as exc:
            logger.error("Could not recount episodes for %s: %s", series_id, exc)

        now = utcnow()
        self.store.update_series_metadata(
            series_id,
            total_seasons=result.total_seasons,
            total_episodes=result.total_episodes,
            fully_discovered=True,
            last_discovery_attempt=now,
            discovery_complete_at=now,
        )
        return result

    def _record_progress(self, series_id: str, result: DiscoveryResult) -> None:
        try:
            self.store.update_series_metadata(
                series_id,
                total_seasons=result.total_seasons,
                total_episodes=result.total_episodes,
            )
        except StoreError as exc:
            logger.warning("Could not record progress for %s: %s", series_id, exc)
