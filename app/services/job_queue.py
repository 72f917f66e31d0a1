"""Durable discovery job queue backed by the ``discovery_jobs`` table."""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import Engine, and_, delete as sa_delete, func, or_, update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.core.exceptions import StoreError
from app.models.media import DiscoveryType, JobStatus
from app.models.tables import DiscoveryJob, utcnow

logger = logging.getLogger(__name__)

STUCK_JOB_MESSAGE = "Reset from stuck processing state (timeout)"
EXHAUSTED_JOB_MESSAGE = "Gave up after {max_attempts} attempts stuck in processing"


class DiscoveryQueue:
    """Job table operations: enqueue, dequeue by priority and age, transitions."""

    def __init__(self, engine: Engine | None = None, max_attempts: int = 3) -> None:
        if engine is None:
            from app.core.database import engine as default_engine

            engine = default_engine
        self.engine = engine
        self.max_attempts = max_attempts

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _is_active(self):
        """Processing, or queued with attempts left."""
        return or_(
            DiscoveryJob.status == JobStatus.PROCESSING,
            and_(
                DiscoveryJob.status == JobStatus.QUEUED,
                DiscoveryJob.attempts < self.max_attempts,
            ),
        )

    def enqueue(
        self,
        series_id: str,
        series_title: str | None = None,
        discovery_type: DiscoveryType = DiscoveryType.FULL_SERIES,
        season_number: int | None = None,
        episode_number: int | None = None,
        priority: int = 5,
        requested_by: str | None = None,
    ) -> DiscoveryJob:
        """Insert a queued job, or return the equivalent job already in flight."""
        try:
            existing = self.find_active_job(
                series_id, discovery_type, season_number, episode_number
            )
            if existing is not None:
                logger.info(
                    "Job %s for %s (%s) already %s, not enqueuing a duplicate",
                    existing.id,
                    series_id,
                    discovery_type.value,
                    existing.status.value,
                )
                return existing

            job = DiscoveryJob(
                series_id=series_id,
                series_title=series_title,
                discovery_type=discovery_type,
                season_number=season_number,
                episode_number=episode_number,
                priority=priority,
                requested_by=requested_by,
            )
            with self._session() as session:
                session.add(job)
                session.commit()
                session.refresh(job)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to enqueue discovery for {series_id}", exc)

        logger.info(
            "Queued %s job %s for %s (priority %s)",
            discovery_type.value,
            job.id,
            series_title or series_id,
            priority,
        )
        return job

    def find_active_job(
        self,
        series_id: str,
        discovery_type: DiscoveryType,
        season_number: int | None = None,
        episode_number: int | None = None,
    ) -> DiscoveryJob | None:
        with self._session() as session:
            statement = select(DiscoveryJob).where(
                DiscoveryJob.series_id == series_id,
                DiscoveryJob.discovery_type == discovery_type,
                DiscoveryJob.season_number == season_number
                if season_number is not None
                else DiscoveryJob.season_number.is_(None),
                DiscoveryJob.episode_number == episode_number
                if episode_number is not None
                else DiscoveryJob.episode_number.is_(None),
                self._is_active(),
            )
            return session.exec(statement).first()

    def has_active_job(self, series_id: str) -> bool:
        """Whether any job for the series is queued or processing."""
        try:
            with self._session() as session:
                statement = (
                    select(DiscoveryJob.id)
                    .where(DiscoveryJob.series_id == series_id)
                    .where(self._is_active())
                    .limit(1)
                )
                return session.exec(statement).first() is not None
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to check active jobs for {series_id}", exc)

    def next_job(self, max_attempts: int | None = None) -> DiscoveryJob | None:
        """Highest-priority, oldest queued job that still has attempts left."""
        if max_attempts is None:
            max_attempts = self.max_attempts
        try:
            with self._session() as session:
                statement = (
                    select(DiscoveryJob)
                    .where(DiscoveryJob.status == JobStatus.QUEUED)
                    .where(DiscoveryJob.attempts < max_attempts)
                    .order_by(
                        DiscoveryJob.priority.desc(),
                        DiscoveryJob.created_at.asc(),
                        DiscoveryJob.id.asc(),
                    )
                    .limit(1)
                )
                return session.exec(statement).first()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to fetch next discovery job", exc)

    def mark_processing(self, job_id: int) -> DiscoveryJob | None:
        """Claim a queued job. Returns None when it is no longer queued."""
        try:
            with self._session() as session:
                result = session.exec(
                    sa_update(DiscoveryJob)
                    .where(DiscoveryJob.id == job_id)
                    .where(DiscoveryJob.status == JobStatus.QUEUED)
                    .values(
                        status=JobStatus.PROCESSING,
                        started_at=utcnow(),
                        completed_at=None,
                        attempts=DiscoveryJob.attempts + 1,
                    )
                )
                session.commit()
                if result.rowcount != 1:
                    return None
                return session.get(DiscoveryJob, job_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to mark job {job_id} as processing", exc)

    def mark_completed(
        self, job_id: int, progress: dict[str, Any], episodes_discovered: int
    ) -> None:
        self._finish(
            job_id,
            status=JobStatus.COMPLETED,
            progress=progress,
            episodes_discovered=episodes_discovered,
            error_message=None,
        )

    def mark_failed(self, job_id: int, error_message: str) -> None:
        self._finish(job_id, status=JobStatus.FAILED, error_message=error_message)

    def _finish(self, job_id: int, **values: Any) -> None:
        try:
            with self._session() as session:
                session.exec(
                    sa_update(DiscoveryJob)
                    .where(DiscoveryJob.id == job_id)
                    .values(completed_at=utcnow(), **values)
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to mark job {job_id} as {values['status'].value}", exc
            )

    def reset_stuck_jobs(
        self, timeout_seconds: float, max_attempts: int | None = None
    ) -> int:
        """Recover jobs left processing for longer than the timeout.

        Attempts are left untouched. A job that has used up its attempts is
        marked failed so it can be retried explicitly; the rest are requeued.
        Returns the number of jobs recovered.
        """
        if max_attempts is None:
            max_attempts = self.max_attempts
        now = utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)
        stuck = (
            DiscoveryJob.status == JobStatus.PROCESSING,
            DiscoveryJob.started_at < cutoff,
        )
        try:
            with self._session() as session:
                exhausted = session.exec(
                    sa_update(DiscoveryJob)
                    .where(*stuck)
                    .where(DiscoveryJob.attempts >= max_attempts)
                    .values(
                        status=JobStatus.FAILED,
                        completed_at=now,
                        error_message=EXHAUSTED_JOB_MESSAGE.format(
                            max_attempts=max_attempts
                        ),
                    )
                )
                requeued = session.exec(
                    sa_update(DiscoveryJob)
                    .where(*stuck)
                    .values(
                        status=JobStatus.QUEUED,
                        started_at=None,
                        error_message=STUCK_JOB_MESSAGE,
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to reset stuck jobs", exc)

        if exhausted.rowcount:
            logger.warning("Failed %s stuck jobs out of attempts", exhausted.rowcount)
        return exhausted.rowcount + requeued.rowcount

    def retry_failed(self, job_id: int) -> DiscoveryJob | None:
        """Put a failed job back in the queue with a fresh attempt budget."""
        try:
            with self._session() as session:
                result = session.exec(
                    sa_update(DiscoveryJob)
                    .where(DiscoveryJob.id == job_id)
                    .where(DiscoveryJob.status == JobStatus.FAILED)
                    .values(
                        status=JobStatus.QUEUED,
                        attempts=0,
                        started_at=None,
                        completed_at=None,
                    )
                )
                session.commit()
                if result.rowcount != 1:
                    return None
                return session.get(DiscoveryJob, job_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to retry job {job_id}", exc)

    def get_job(self, job_id: int) -> DiscoveryJob | None:
        try:
            with self._session() as session:
                return session.get(DiscoveryJob, job_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read job {job_id}", exc)

    def list_jobs(
        self,
        status: JobStatus | None = None,
        series_id: str | None = None,
        limit: int = 50,
    ) -> list[DiscoveryJob]:
        try:
            with self._session() as session:
                statement = select(DiscoveryJob)
                if status is not None:
                    statement = statement.where(DiscoveryJob.status == status)
                if series_id is not None:
                    statement = statement.where(DiscoveryJob.series_id == series_id)
                statement = statement.order_by(
                    DiscoveryJob.priority.desc(), DiscoveryJob.created_at.asc()
                ).limit(limit)
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise StoreError("Failed to list discovery jobs", exc)

    def latest_failed_job(self, series_id: str) -> DiscoveryJob | None:
        try:
            with self._session() as session:
                statement = (
                    select(DiscoveryJob)
                    .where(DiscoveryJob.series_id == series_id)
                    .where(DiscoveryJob.status == JobStatus.FAILED)
                    .order_by(DiscoveryJob.completed_at.desc())
                    .limit(1)
                )
                return session.exec(statement).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read failed jobs for {series_id}", exc)

    def processing_job(self) -> DiscoveryJob | None:
        try:
            with self._session() as session:
                statement = select(DiscoveryJob).where(
                    DiscoveryJob.status == JobStatus.PROCESSING
                )
                return session.exec(statement).first()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to read processing job", exc)

    def counts(self) -> dict[JobStatus, int]:
        """Number of jobs per status (every status present, zero if none)."""
        try:
            with self._session() as session:
                statement = select(DiscoveryJob.status, func.count()).group_by(
                    DiscoveryJob.status
                )
                rows = session.exec(statement).all()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to count discovery jobs", exc)

        counts = {status: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status)] = count
        return counts

    def clear(self) -> None:
        try:
            with self._session() as session:
                session.exec(sa_delete(DiscoveryJob))
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to clear discovery queue", exc)
