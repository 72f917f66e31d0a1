from datetime import date

from app.models.media import EpisodeData


def make_episode(season=1, episode=1, **overrides):
    values = dict(
        series_id="tt0944947",
        season_number=season,
        episode_number=episode,
        title=f"Episode {episode}",
        air_date=date(2011, 4, 17),
        runtime_minutes=62,
        imdb_rating=8.9,
        api_response={"Title": f"Episode {episode}", "Response": "True"},
    )
    values.update(overrides)
    return EpisodeData(**values)


def test_upsert_episode_is_idempotent(store):
    """Writing the same episode twice leaves exactly one row with the latest values."""
    store.upsert_episode(make_episode(title="Winter Is Coming"))
    store.upsert_episode(make_episode(title="Winter Is Coming (Pilot)"))

    assert store.count_season_episodes("tt0944947", 1) == 1
    record = store.get_episode("tt0944947", 1, 1)
    assert record.title == "Winter Is Coming (Pilot)"
    assert record.api_response["Response"] == "True"
    assert record.fetch_success is True


def test_upsert_preserves_access_counters(store):
    store.upsert_episode(make_episode())
    store.touch_season("tt0944947", 1)
    store.touch_season("tt0944947", 1)

    store.upsert_episode(make_episode(title="Rewritten"))

    record = store.get_episode("tt0944947", 1, 1)
    assert record.access_count == 2
    assert record.last_accessed_at is not None
    assert record.title == "Rewritten"


def test_season_episodes_are_ordered(store):
    for number in (3, 1, 2):
        store.upsert_episode(make_episode(episode=number))
    store.upsert_episode(make_episode(season=2, episode=1))

    records = store.get_season_episodes("tt0944947", 1)
    assert [r.episode_number for r in records] == [1, 2, 3]
    assert store.count_series_episodes("tt0944947") == 4


def test_touch_season_returns_rows_updated(store):
    store.upsert_episode(make_episode(episode=1))
    store.upsert_episode(make_episode(episode=2))

    assert store.touch_season("tt0944947", 1) == 2
    assert store.touch_season("tt0944947", 5) == 0


def test_series_metadata_upsert_and_update(store):
    store.upsert_series_metadata(
        "tt0944947", series_title="Game of Thrones", source_rating=9.2
    )
    store.upsert_series_metadata("tt0944947", series_title="GoT", total_seasons=3)
    store.update_series_metadata("tt0944947", total_episodes=30, fully_discovered=True)

    metadata = store.get_series_metadata("tt0944947")
    assert metadata.series_title == "GoT"
    assert metadata.total_seasons == 3
    assert metadata.total_episodes == 30
    assert metadata.fully_discovered is True


def test_delete_series_only_touches_that_series(store):
    store.upsert_episode(make_episode())
    store.upsert_episode(make_episode(series_id="tt0903747"))
    store.upsert_series_metadata("tt0944947", series_title="Game of Thrones")

    assert store.delete_series("tt0944947") == 1

    assert store.get_series_metadata("tt0944947") is None
    assert store.count_series_episodes("tt0944947") == 0
    assert store.count_series_episodes("tt0903747") == 1


def test_clear(store):
    store.upsert_episode(make_episode())
    store.upsert_series_metadata("tt0944947", series_title="Game of Thrones")

    store.clear()

    assert store.count_series_episodes("tt0944947") == 0
    assert store.get_series_metadata("tt0944947") is None
