"""TMDB lookup used as a rating fallback when the metadata provider has none."""

import asyncio
from cachetools import cached
from cachetools import TTLCache
from typing import Optional

import tmdbsimple as tmdb

from app.core.config import get_settings
from app.core.exceptions import TMDBError
from app.models.media import SeriesInfo
import logging
import requests

logger = logging.getLogger(__name__)


series_cache = TTLCache(maxsize=100, ttl=1800)

# Initialize TMDB
settings = get_settings()
tmdb.API_KEY = settings.tmdb_api_key


def tmdb_enabled() -> bool:
    return bool(tmdb.API_KEY)


def _parse_tv_result(series_id: str, result: dict) -> SeriesInfo:
    """Parse a TV entry from a TMDB /find response."""
    vote_average = result.get("vote_average")
    return SeriesInfo(
        series_id=series_id,
        title=result.get("name") or result.get("original_name"),
        # TMDB reports 0.0 for titles nobody voted on
        rating=float(vote_average) if vote_average else None,
    )


@cached(series_cache)
def _find_series_sync(imdb_id: str) -> Optional[SeriesInfo]:
    """Resolve an IMDb series id through TMDB /find (synchronous, cached)."""
    find = tmdb.Find(imdb_id)
    try:
        response = find.info(external_source="imdb_id")
    except (requests.exceptions.RequestException, tmdb.APIKeyError) as exc:
        logger.error("Failed to look up %s on TMDB: %s", imdb_id, exc)
        raise TMDBError(f"Failed to look up {imdb_id} on TMDB", exc)

    tv_results = response.get("tv_results", [])
    if not tv_results:
        return None
    return _parse_tv_result(imdb_id, tv_results[0])


async def find_series(imdb_id: str) -> Optional[SeriesInfo]:
    """Resolve an IMDb series id through TMDB (async)."""
    return await asyncio.to_thread(_find_series_sync, imdb_id)


async def get_series_rating(imdb_id: str) -> Optional[float]:
    """TMDB vote average for a series, or None when unknown or TMDB is off."""
    if not tmdb_enabled():
        return None
    try:
        info = await find_series(imdb_id)
    except TMDBError:
        return None
    return info.rating if info else None
