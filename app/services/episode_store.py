"""Episode and series metadata store backed by SQLModel tables.

All writes are upserts keyed by natural identity, so a resumed or duplicated
discovery run overwrites rows instead of adding new ones.
"""

import logging
from typing import Any

from sqlalchemy import Engine, delete as sa_delete, func, update as sa_update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.core.exceptions import StoreError
from app.models.media import EpisodeData
from app.models.tables import EpisodeRecord, SeriesMetadata, utcnow

logger = logging.getLogger(__name__)

EPISODE_KEY = ("series_id", "season_number", "episode_number")

# Columns an upsert must never overwrite on an existing row
_PRESERVED_ON_CONFLICT = {"id", "created_at", "access_count", "last_accessed_at"}


def dialect_insert(engine: Engine, table):
    """Return an INSERT construct that supports ON CONFLICT for this engine."""
    if engine.dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)


class EpisodeStore:
    """Persisted episode cache and per-series discovery metadata."""

    def __init__(self, engine: Engine | None = None) -> None:
        if engine is None:
            from app.core.database import engine as default_engine

            engine = default_engine
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _upsert(self, table, values: dict[str, Any], key: tuple[str, ...]) -> None:
        stmt = dialect_insert(self.engine, table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key),
            set_={
                name: stmt.excluded[name]
                for name in values
                if name not in key and name not in _PRESERVED_ON_CONFLICT
            },
        )
        with self._session() as session:
            session.exec(stmt)
            session.commit()

    # --- Episodes ---

    def upsert_episode(self, episode: EpisodeData) -> None:
        """Insert or overwrite one episode."""
        now = utcnow()
        values = episode.model_dump()
        values.update(
            last_fetched_at=now,
            fetch_success=True,
            created_at=now,
            updated_at=now,
        )
        try:
            self._upsert(EpisodeRecord, values, EPISODE_KEY)
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to upsert {episode.series_id} "
                f"S{episode.season_number}E{episode.episode_number}",
                exc,
            )

    def get_season_episodes(
        self, series_id: str, season_number: int
    ) -> list[EpisodeRecord]:
        try:
            with self._session() as session:
                statement = (
                    select(EpisodeRecord)
                    .where(EpisodeRecord.series_id == series_id)
                    .where(EpisodeRecord.season_number == season_number)
                    .order_by(EpisodeRecord.episode_number)
                )
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to read episodes for {series_id} S{season_number}", exc
            )

    def count_season_episodes(self, series_id: str, season_number: int) -> int:
        try:
            with self._session() as session:
                statement = (
                    select(func.count())
                    .select_from(EpisodeRecord)
                    .where(EpisodeRecord.series_id == series_id)
                    .where(EpisodeRecord.season_number == season_number)
                )
                return session.exec(statement).one()
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to count episodes for {series_id} S{season_number}", exc
            )

    def count_series_episodes(self, series_id: str) -> int:
        try:
            with self._session() as session:
                statement = (
                    select(func.count())
                    .select_from(EpisodeRecord)
                    .where(EpisodeRecord.series_id == series_id)
                )
                return session.exec(statement).one()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to count episodes for {series_id}", exc)

    def get_episode(
        self, series_id: str, season_number: int, episode_number: int
    ) -> EpisodeRecord | None:
        try:
            with self._session() as session:
                statement = select(EpisodeRecord).where(
                    EpisodeRecord.series_id == series_id,
                    EpisodeRecord.season_number == season_number,
                    EpisodeRecord.episode_number == episode_number,
                )
                return session.exec(statement).first()
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to read {series_id} S{season_number}E{episode_number}", exc
            )

    def touch_season(self, series_id: str, season_number: int) -> int:
        """Bump the access counter of every episode in a season."""
        try:
            with self._session() as session:
                result = session.exec(
                    sa_update(EpisodeRecord)
                    .where(EpisodeRecord.series_id == series_id)
                    .where(EpisodeRecord.season_number == season_number)
                    .values(
                        access_count=EpisodeRecord.access_count + 1,
                        last_accessed_at=utcnow(),
                    )
                )
                session.commit()
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to update access time for {series_id} S{season_number}", exc
            )

    # --- Series metadata ---

    def upsert_series_metadata(self, series_id: str, **fields: Any) -> None:
        now = utcnow()
        values = {"series_id": series_id, "created_at": now, "updated_at": now}
        values.update(fields)
        try:
            self._upsert(SeriesMetadata, values, ("series_id",))
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to upsert series metadata for {series_id}", exc)

    def update_series_metadata(self, series_id: str, **fields: Any) -> int:
        fields["updated_at"] = utcnow()
        try:
            with self._session() as session:
                result = session.exec(
                    sa_update(SeriesMetadata)
                    .where(SeriesMetadata.series_id == series_id)
                    .values(**fields)
                )
                session.commit()
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to update series metadata for {series_id}", exc)

    def get_series_metadata(self, series_id: str) -> SeriesMetadata | None:
        try:
            with self._session() as session:
                return session.get(SeriesMetadata, series_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read series metadata for {series_id}", exc)

    # --- Maintenance ---

    def delete_series(self, series_id: str) -> int:
        """Drop all cached episodes and the metadata row of a series."""
        try:
            with self._session() as session:
                result = session.exec(
                    sa_delete(EpisodeRecord).where(EpisodeRecord.series_id == series_id)
                )
                session.exec(
                    sa_delete(SeriesMetadata).where(
                        SeriesMetadata.series_id == series_id
                    )
                )
                session.commit()
                logger.info("Cleared %s cached episodes for %s", result.rowcount, series_id)
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to clear cache for {series_id}", exc)

    def clear(self) -> None:
        try:
            with self._session() as session:
                session.exec(sa_delete(EpisodeRecord))
                session.exec(sa_delete(SeriesMetadata))
                session.commit()
                logger.info("Cleared the episode store")
        except SQLAlchemyError as exc:
            raise StoreError("Failed to clear episode store", exc)
