"""Persisted tables: discovery jobs, cached episodes, series metadata, cache rows."""

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.models.media import DiscoveryType, JobStatus, Priority


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a timestamp read back without tzinfo (SQLite drops it)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def timestamp_field(**kwargs: Any) -> Any:
    """A timezone-aware timestamp column."""
    return Field(sa_type=DateTime(timezone=True), **kwargs)


class DiscoveryJob(SQLModel, table=True):
    """A unit of discovery work for a series, season or episode."""

    __tablename__ = "discovery_jobs"

    id: int | None = Field(default=None, primary_key=True)
    series_id: str = Field(index=True)
    series_title: str | None = None
    discovery_type: DiscoveryType = Field(default=DiscoveryType.FULL_SERIES)
    season_number: int | None = None
    episode_number: int | None = None
    priority: int = Field(default=5, index=True)
    status: JobStatus = Field(default=JobStatus.QUEUED, index=True)
    attempts: int = 0
    episodes_discovered: int = 0
    progress: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    error_message: str | None = None
    requested_by: str | None = None
    created_at: datetime = timestamp_field(
        default_factory=utcnow, nullable=False, index=True
    )
    started_at: datetime | None = timestamp_field(default=None)
    completed_at: datetime | None = timestamp_field(default=None)


class EpisodeRecord(SQLModel, table=True):
    """A cached episode, unique per (series, season, episode)."""

    __tablename__ = "episodes_cache"
    __table_args__ = (
        UniqueConstraint(
            "series_id", "season_number", "episode_number", name="uq_series_episode"
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    series_id: str = Field(index=True)
    season_number: int
    episode_number: int

    title: str | None = None
    plot: str | None = None
    rating: str | None = None
    air_date: date | None = None
    runtime_minutes: int | None = None
    year: int | None = None
    director: str | None = None
    writer: str | None = None
    actors: str | None = None
    genre: str | None = None
    poster_url: str | None = None
    imdb_rating: float | None = None
    imdb_votes: str | None = None
    api_response: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )

    last_fetched_at: datetime = timestamp_field(default_factory=utcnow, nullable=False)
    fetch_success: bool = True
    access_count: int = 0
    last_accessed_at: datetime | None = timestamp_field(default=None)
    created_at: datetime = timestamp_field(default_factory=utcnow, nullable=False)
    updated_at: datetime = timestamp_field(default_factory=utcnow, nullable=False)


class SeriesMetadata(SQLModel, table=True):
    """Per-series discovery counts and smart TTL."""

    __tablename__ = "series_metadata"

    series_id: str = Field(primary_key=True)
    series_title: str | None = None
    total_seasons: int = 0
    total_episodes: int = 0
    source_rating: float | None = None
    calculated_ttl_days: int | None = None
    fully_discovered: bool = False
    last_discovery_attempt: datetime | None = timestamp_field(default=None)
    discovery_complete_at: datetime | None = timestamp_field(default=None)
    created_at: datetime = timestamp_field(default_factory=utcnow, nullable=False)
    updated_at: datetime = timestamp_field(default_factory=utcnow, nullable=False)


class CacheRow(SQLModel, table=True):
    """Persistent tier of the smart cache."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True)
    payload: Any = Field(default=None, sa_column=Column(JSON, nullable=True))
    timestamp: float  # Epoch seconds at write time
    ttl: float  # Seconds
    priority: Priority = Field(default=Priority.MEDIUM, index=True)
    access_count: int = 0
    last_accessed: float = 0.0
    size: int = 0
