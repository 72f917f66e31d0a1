"""Background worker that drains the discovery job queue one job at a time."""

import asyncio
import logging
from typing import Any

from app.core.exceptions import StoreError
from app.services.discovery import EpisodeDiscovery
from app.services.job_queue import DiscoveryQueue

logger = logging.getLogger(__name__)


class DiscoveryJobProcessor:
    """Polls the queue, runs jobs through ``EpisodeDiscovery``, records outcomes.

    At most one job is processed at a time. ``current_job_id`` and
    ``current_series`` describe the job in flight and are always cleared when
    it finishes, whatever the outcome.
    """

    def __init__(
        self,
        queue: DiscoveryQueue,
        discovery: EpisodeDiscovery,
        interval: float = 5.0,
        stuck_job_timeout: float = 600.0,
        max_attempts: int = 3,
    ) -> None:
        self.queue = queue
        self.discovery = discovery
        self.interval = interval
        self.stuck_job_timeout = stuck_job_timeout
        self.max_attempts = max_attempts

        self.current_job_id: int | None = None
        self.current_series: str | None = None
        self.jobs_completed = 0
        self.jobs_failed = 0

        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings, queue, discovery) -> "DiscoveryJobProcessor":
        return cls(
            queue,
            discovery,
            interval=settings.worker_interval,
            stuck_job_timeout=settings.stuck_job_timeout,
            max_attempts=settings.max_job_attempts,
        )

    @property
    def is_processing(self) -> bool:
        return self.current_job_id is not None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def recover_stuck_jobs(self) -> int:
        """Requeue jobs abandoned in the processing state, failing exhausted ones."""
        try:
            count = self.queue.reset_stuck_jobs(
                self.stuck_job_timeout, self.max_attempts
            )
        except StoreError as exc:
            logger.error("Error resetting stuck jobs: %s", exc)
            return 0
        if count:
            logger.info("Reset %s stuck jobs", count)
        return count

    async def tick(self) -> bool:
        """Run the next queued job, if any. Returns True when a job ran."""
        if self.is_processing:
            return False

        try:
            job = self.queue.next_job(self.max_attempts)
            if job is None:
                return False
            claimed = self.queue.mark_processing(job.id)
        except StoreError as exc:
            logger.error("Error fetching next job: %s", exc)
            return False
        if claimed is None:
            # Picked up elsewhere between dequeue and claim
            return False

        self.current_job_id = claimed.id
        self.current_series = claimed.series_title or claimed.series_id
        logger.info(
            "Processing %s job for %s (attempt %s)",
            claimed.discovery_type.value,
            self.current_series,
            claimed.attempts,
        )

        try:
            result = await self.discovery.run(claimed)
        except Exception as exc:
            logger.error("Job %s failed: %s", claimed.id, exc)
            self.jobs_failed += 1
            self._record(self.queue.mark_failed, claimed.id, str(exc) or repr(exc))
        else:
            logger.info(
                "Job completed: %s episodes discovered for %s",
                result.total_episodes,
                self.current_series,
            )
            self.jobs_completed += 1
            self._record(
                self.queue.mark_completed,
                claimed.id,
                result.as_progress(),
                result.total_episodes,
            )
        finally:
            self.current_job_id = None
            self.current_series = None
        return True

    def _record(self, mark, *args: Any) -> None:
        try:
            mark(*args)
        except StoreError as exc:
            # Left in processing; the stuck-job sweep will pick it up again
            logger.error("Could not record job outcome: %s", exc)

    def notify(self) -> None:
        """Wake the loop so a freshly queued job starts without waiting."""
        self._wake.set()

    async def run_forever(self) -> None:
        logger.info("Background job processor started")
        while True:
            try:
                ran = await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Unexpected error in job processor: %s", exc)
                ran = False
            if ran:
                # More work may be waiting; check again right away
                continue
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.is_running:
            return
        self.recover_stuck_jobs()
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Background job processor stopped")

    def get_processing_stats(self) -> dict[str, Any]:
        try:
            counts = {status.value: n for status, n in self.queue.counts().items()}
        except StoreError as exc:
            logger.error("Error reading queue counts: %s", exc)
            counts = {}
        return {
            "is_running": self.is_running,
            "is_processing": self.is_processing,
            "current_job_id": self.current_job_id,
            "current_series": self.current_series,
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "queue": counts,
        }
