import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from app.core.database import create_db_and_tables
from app.models.media import EpisodeData, Found, NotFound, SeriesInfo, TransientError
from app.services.episode_store import EpisodeStore
from app.services.job_queue import DiscoveryQueue
from app.services.omdb import MetadataClient
from app.services.request_scheduler import RequestScheduler
from app.services.smart_cache import InMemoryCacheBackend, SmartCache


class FakeMetadataClient(MetadataClient):
    """In-memory provider.

    ``seasons`` maps season number to the number of episodes it has. Any
    (season, episode) listed in ``errors`` comes back as a TransientError.
    """

    def __init__(self, seasons=None, rating=None, title="Fake Show", errors=()):
        self.seasons = seasons or {}
        self.rating = rating
        self.title = title
        self.errors = set(errors)
        self.calls = []

    async def fetch_episode(self, series_id, season, episode):
        self.calls.append((season, episode))
        if (season, episode) in self.errors:
            return TransientError(message="Request limit reached!")
        if episode <= self.seasons.get(season, 0):
            return Found(
                episode=EpisodeData(
                    series_id=series_id,
                    season_number=season,
                    episode_number=episode,
                    title=f"Episode {episode}",
                    runtime_minutes=42,
                )
            )
        return NotFound(reason="Series or episode not found!")

    async def fetch_series(self, series_id):
        return SeriesInfo(series_id=series_id, title=self.title, rating=self.rating)


@pytest.fixture
def engine():
    """Fresh in-memory database shared across sessions of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def store(engine):
    return EpisodeStore(engine)


@pytest.fixture
def queue(engine):
    return DiscoveryQueue(engine)


@pytest.fixture
def cache():
    return SmartCache(backend=InMemoryCacheBackend())


@pytest_asyncio.fixture
async def scheduler():
    # No start delay so discovery tests do not crawl
    scheduler = RequestScheduler(max_concurrency=2, min_delay=0.0)
    yield scheduler
    await scheduler.shutdown()
