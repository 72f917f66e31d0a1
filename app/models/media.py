"""Media models for episode discovery results and façade responses."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel


class DiscoveryType(str, Enum):
    """Kind of work a discovery job performs."""

    FULL_SERIES = "full_series"
    FULL_SEASON = "full_season"
    SINGLE_EPISODE = "single_episode"


class JobStatus(str, Enum):
    """Discovery job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Priority(str, Enum):
    """Priority tiers shared by the request scheduler and the smart cache."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Numeric job priorities used by the discovery queue (higher = sooner)
JOB_PRIORITY_VALUES = {Priority.HIGH: 10, Priority.MEDIUM: 5, Priority.LOW: 1}


class EpisodeData(BaseModel):
    """A single episode as returned by the metadata provider."""

    series_id: str
    season_number: int
    episode_number: int
    title: Optional[str] = None
    plot: Optional[str] = None
    rating: Optional[str] = None  # Age rating, e.g. "TV-14"
    air_date: Optional[date] = None
    runtime_minutes: Optional[int] = None
    year: Optional[int] = None
    director: Optional[str] = None
    writer: Optional[str] = None
    actors: Optional[str] = None
    genre: Optional[str] = None
    poster_url: Optional[str] = None
    imdb_rating: Optional[float] = None
    imdb_votes: Optional[str] = None
    api_response: dict[str, Any] = {}


class SeriesInfo(BaseModel):
    """Series-level data used to seed metadata and compute the TTL."""

    series_id: str
    title: Optional[str] = None
    rating: Optional[float] = None
    total_seasons: Optional[int] = None


# Provider results: exactly one of these comes back from every episode lookup.


class Found(BaseModel):
    """The provider returned the episode."""

    episode: EpisodeData


class NotFound(BaseModel):
    """The provider says the episode does not exist."""

    reason: str = "Episode not found"


class TransientError(BaseModel):
    """The lookup failed for a reason that may go away on a later attempt."""

    message: str


ProviderResult = Union[Found, NotFound, TransientError]


class Episode(BaseModel):
    """A cached episode formatted for display."""

    series_id: str
    season: int
    episode: int
    imdb_id: str
    title: Optional[str] = None
    plot: Optional[str] = None
    released: Optional[str] = None
    runtime: Optional[str] = None
    imdb_rating: Optional[str] = None
    poster: Optional[str] = None
    director: Optional[str] = None
    writer: Optional[str] = None
    actors: Optional[str] = None


class SeriesStatus(BaseModel):
    """Cache status of a series as seen by the UI."""

    cached: bool
    total_seasons: int = 0
    total_episodes: int = 0
    last_updated: Optional[datetime] = None
    is_being_fetched: bool = False
    last_error: Optional[str] = None  # Error of the latest failed job, if any


class QueueStatus(BaseModel):
    """Snapshot of the discovery queue."""

    queue_length: int
    is_processing: bool
    currently_processing: Optional[str] = None
