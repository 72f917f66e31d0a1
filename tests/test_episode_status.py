from datetime import date, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlmodel import Session

from app.models.media import DiscoveryType, EpisodeData, JobStatus, Priority
from app.models.tables import DiscoveryJob, SeriesMetadata, utcnow
from app.services.episode_status import (
    EpisodeStatusService,
    calculate_ttl,
    format_episode,
    season_cache_key,
)

SERIES = "tt0903747"


@pytest.mark.parametrize(
    "rating, expected",
    [
        (9.5, 56),
        (8.5, 56),
        (8.2, 42),
        (7.0, 28),
        (6.9, 14),
        (6.0, 14),
        (5.9, 7),
        (0.0, 7),
        (11.0, 56),
        (-1.0, 7),
        (None, 7),
    ],
)
def test_calculate_ttl(rating, expected):
    assert calculate_ttl(rating) == expected


def test_calculate_ttl_unknown_rating_uses_default():
    assert calculate_ttl(None, default_days=3) == 3


@pytest.fixture
def service(store, queue, cache):
    return EpisodeStatusService(store, queue, cache, processor=MagicMock(current_series=None))


def seed_episodes(store, season=1, count=3):
    for number in range(1, count + 1):
        store.upsert_episode(
            EpisodeData(
                series_id=SERIES,
                season_number=season,
                episode_number=number,
                title=f"Episode {number}",
                air_date=date(2008, 1, 20),
                runtime_minutes=58,
                imdb_rating=9.0,
            )
        )


def mark_discovered(store, rating=8.9, age=timedelta(0), total=3):
    store.upsert_series_metadata(
        SERIES,
        series_title="Breaking Bad",
        total_seasons=1,
        total_episodes=total,
        source_rating=rating,
        calculated_ttl_days=calculate_ttl(rating),
        fully_discovered=True,
        last_discovery_attempt=utcnow() - age,
    )


def test_unknown_series_is_not_cached(service):
    status = service.get_series_status(SERIES)
    assert status.cached is False
    assert status.is_being_fetched is False


def test_discovered_series_is_cached_within_ttl(service, store):
    seed_episodes(store)
    mark_discovered(store, rating=8.9, age=timedelta(days=55))

    status = service.get_series_status(SERIES)

    assert status.cached is True
    assert status.total_episodes == 3
    assert status.last_updated is not None


def test_cache_expires_after_ttl(service, store):
    mark_discovered(store, rating=5.0, age=timedelta(days=8))
    assert service.get_series_status(SERIES).cached is False


def test_series_without_episodes_is_not_cached(service, store):
    mark_discovered(store, total=0)
    assert service.get_series_status(SERIES).cached is False


def test_status_reports_active_job_and_last_error(service, queue):
    job = queue.enqueue(SERIES)
    assert service.get_series_status(SERIES).is_being_fetched is True

    queue.mark_processing(job.id)
    queue.mark_failed(job.id, "Invalid API key!")

    status = service.get_series_status(SERIES)
    assert status.is_being_fetched is False
    assert status.last_error == "Invalid API key!"


def test_get_season_episodes_formats_and_caches(service, store, cache):
    seed_episodes(store)

    episodes = service.get_season_episodes(SERIES, 1)

    assert [e.episode for e in episodes] == [1, 2, 3]
    assert episodes[0].imdb_id == f"{SERIES}_S1E1"
    assert episodes[0].runtime == "58 min"
    assert episodes[0].released == "2008-01-20"
    assert episodes[0].imdb_rating == "9.0"
    assert cache.get(season_cache_key(SERIES, 1)) is not None

    # Served from the cache, access counters still move
    store.delete_series(SERIES)
    assert len(service.get_season_episodes(SERIES, 1)) == 3


def test_get_season_episodes_bumps_access_count(service, store):
    seed_episodes(store, count=1)
    service.get_season_episodes(SERIES, 1)
    service.get_season_episodes(SERIES, 1)

    assert store.get_episode(SERIES, 1, 1).access_count == 2


def test_get_season_episodes_missing(service):
    assert service.get_season_episodes(SERIES, 4) is None


def test_enqueue_series_maps_priority_and_wakes_worker(service, queue):
    job = service.enqueue_series(SERIES, "Breaking Bad", priority="high")

    assert job.priority == 10
    assert job.discovery_type == DiscoveryType.FULL_SERIES
    service.processor.notify.assert_called_once()


def test_enqueue_series_skips_cached_or_in_flight(service, store, queue):
    service.enqueue_series(SERIES, priority=Priority.LOW)
    assert service.enqueue_series(SERIES) is None
    assert queue.counts()[JobStatus.QUEUED] == 1

    queue.clear()
    seed_episodes(store)
    mark_discovered(store)
    assert service.enqueue_series(SERIES) is None


def test_enqueue_season_and_episode(service):
    season = service.enqueue_season(SERIES, 2, priority="low")
    episode = service.enqueue_episode(SERIES, 2, 5)

    assert season.priority == 1
    assert season.season_number == 2
    assert episode.priority == 5
    assert episode.discovery_type == DiscoveryType.SINGLE_EPISODE


def test_force_refresh_series(service, store, cache):
    seed_episodes(store)
    mark_discovered(store)
    service.get_season_episodes(SERIES, 1)

    job = service.force_refresh_series(SERIES, "Breaking Bad")

    assert job.priority == 10
    assert store.count_series_episodes(SERIES) == 0
    assert store.get_series_metadata(SERIES) is None
    assert cache.get(season_cache_key(SERIES, 1)) is None


def test_queue_status(service, queue):
    assert service.get_queue_status().queue_length == 0

    job = queue.enqueue(SERIES, series_title="Breaking Bad")
    queue.enqueue("tt0000002")
    queue.mark_processing(job.id)

    status = service.get_queue_status()
    assert status.queue_length == 2
    assert status.is_processing is True
    assert status.currently_processing == "Breaking Bad"


def test_clear_all(service, store, queue, cache):
    seed_episodes(store)
    queue.enqueue(SERIES)
    cache.set("episodes:x:1", [], ttl=60)

    service.clear_all()

    assert store.count_series_episodes(SERIES) == 0
    assert queue.counts()[JobStatus.QUEUED] == 0
    assert cache.memory_keys == []


def test_format_episode_handles_missing_fields(store):
    store.upsert_episode(
        EpisodeData(series_id=SERIES, season_number=1, episode_number=1)
    )
    episode = format_episode(store.get_episode(SERIES, 1, 1))

    assert episode.runtime is None
    assert episode.released is None
    assert episode.imdb_rating is None


def test_enqueue_series_after_job_ran_out_of_attempts(service, queue, engine):
    job = queue.enqueue(SERIES)
    with Session(engine) as session:
        row = session.get(DiscoveryJob, job.id)
        row.attempts = 3
        session.add(row)
        session.commit()

    assert service.get_series_status(SERIES).is_being_fetched is False

    again = service.enqueue_series(SERIES)

    assert again is not None
    assert again.id != job.id


@pytest.mark.parametrize("tz", [None, timezone.utc])
def test_cache_validity_accepts_naive_and_aware_timestamps(service, tz):
    attempt = (utcnow() - timedelta(days=1)).replace(tzinfo=tz)
    metadata = SeriesMetadata(
        series_id=SERIES,
        source_rating=8.0,
        calculated_ttl_days=42,
        last_discovery_attempt=attempt,
    )

    assert service.is_cache_valid(metadata) is True
