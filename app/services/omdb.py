"""Metadata provider client (OMDb) with a typed result boundary."""

import logging
import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any

import niquests
from urllib3.util import Retry

from app.core.config import get_settings
from app.core.exceptions import ProviderError
from app.models.media import (
    EpisodeData,
    Found,
    NotFound,
    ProviderResult,
    SeriesInfo,
    TransientError,
)

logger = logging.getLogger(__name__)

_RUNTIME_RE = re.compile(r"(\d+)")


class MetadataClient(ABC):
    """Interface the discovery algorithm uses to look up episodes.

    Implementations never raise for a missing episode; they return
    ``NotFound``. Transport and rate-limit failures come back as
    ``TransientError`` so callers can count them.
    """

    @abstractmethod
    async def fetch_episode(
        self, series_id: str, season: int, episode: int
    ) -> ProviderResult:
        pass

    @abstractmethod
    async def fetch_series(self, series_id: str) -> SeriesInfo | None:
        """Series-level info (title, rating), or None if unknown."""
        pass

    async def aclose(self) -> None:
        pass


def _clean(value: Any) -> Any:
    """OMDb uses the string "N/A" for missing values."""
    if value in (None, "", "N/A"):
        return None
    return value


def parse_runtime(runtime: str | None) -> int | None:
    """Parse '42 min' into 42."""
    runtime = _clean(runtime)
    if not runtime:
        return None
    match = _RUNTIME_RE.search(runtime)
    return int(match.group(1)) if match else None


def parse_float(value: str | None) -> float | None:
    value = _clean(value)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_year(value: str | None) -> int | None:
    value = _clean(value)
    if not value:
        return None
    match = _RUNTIME_RE.search(str(value))
    return int(match.group(1)) if match else None


def parse_released(value: str | None) -> date | None:
    """Parse OMDb release dates such as '22 Sep 2004'."""
    value = _clean(value)
    if not value:
        return None
    for fmt in ("%d %b %Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def parse_episode(
    series_id: str, season: int, episode: int, data: dict[str, Any]
) -> EpisodeData:
    """Map an OMDb episode payload to ``EpisodeData``."""
    return EpisodeData(
        series_id=series_id,
        season_number=season,
        episode_number=episode,
        title=_clean(data.get("Title")),
        plot=_clean(data.get("Plot")),
        rating=_clean(data.get("Rated")),
        air_date=parse_released(data.get("Released")),
        runtime_minutes=parse_runtime(data.get("Runtime")),
        year=parse_year(data.get("Year")),
        director=_clean(data.get("Director")),
        writer=_clean(data.get("Writer")),
        actors=_clean(data.get("Actors")),
        genre=_clean(data.get("Genre")),
        poster_url=_clean(data.get("Poster")),
        imdb_rating=parse_float(data.get("imdbRating")),
        imdb_votes=_clean(data.get("imdbVotes")),
        api_response=data,
    )


def _is_not_found(error: str | None) -> bool:
    return bool(error) and "not found" in error.lower()


class OMDbClient(MetadataClient):
    """OMDb lookups over a retrying niquests session."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        retry_config: Retry | None = None,
    ):
        settings = get_settings()
        self._settings = settings
        self.api_key = api_key if api_key is not None else settings.omdb_api_key
        self.base_url = base_url or settings.omdb_base_url
        self.timeout = settings.provider_timeout
        if retry_config is None:
            retry_config = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=[500, 502, 503, 504],
                allowed_methods=["GET"],
            )
        self.session = niquests.AsyncSession(retries=retry_config)
        if settings.proxy:
            self.session.proxies = {"http": settings.proxy, "https": settings.proxy}

    async def aclose(self) -> None:
        """Properly close the internal HTTP session."""
        if hasattr(self, "session") and self.session:
            await self.session.close()

    async def _get(self, params: dict[str, str]) -> dict[str, Any]:
        if not self.api_key:
            raise ProviderError("OMDb API key is not configured")
        try:
            response = await self.session.get(
                self.base_url,
                params={"apikey": self.api_key, **params},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except niquests.exceptions.RequestException as exc:
            raise ProviderError(f"OMDb request failed: {exc}", exc)
        except ValueError as exc:
            raise ProviderError("OMDb returned invalid JSON", exc)

        if not isinstance(data, dict):
            raise ProviderError("OMDb returned an unexpected payload")
        return data

    async def fetch_episode(
        self, series_id: str, season: int, episode: int
    ) -> ProviderResult:
        try:
            data = await self._get(
                {"i": series_id, "Season": str(season), "Episode": str(episode)}
            )
        except ProviderError as exc:
            logger.warning(
                "OMDb error for %s S%sE%s: %s", series_id, season, episode, exc
            )
            return TransientError(message=str(exc))

        if data.get("Response") == "True":
            return Found(episode=parse_episode(series_id, season, episode, data))

        error = data.get("Error")
        if _is_not_found(error):
            return NotFound(reason=error)
        # Rate limits, bad keys and other refusals may clear up later
        return TransientError(message=error or "OMDb refused the request")

    async def fetch_series(self, series_id: str) -> SeriesInfo | None:
        try:
            data = await self._get({"i": series_id, "type": "series"})
        except ProviderError as exc:
            logger.warning("OMDb series lookup failed for %s: %s", series_id, exc)
            return None

        if data.get("Response") != "True":
            return None

        total_seasons = _clean(data.get("totalSeasons"))
        return SeriesInfo(
            series_id=series_id,
            title=_clean(data.get("Title")),
            rating=parse_float(data.get("imdbRating")),
            total_seasons=int(total_seasons)
            if total_seasons and str(total_seasons).isdigit()
            else None,
        )
