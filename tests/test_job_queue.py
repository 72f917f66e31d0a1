from datetime import timedelta, timezone

from sqlmodel import Session

from app.models.media import DiscoveryType, JobStatus
from app.models.tables import DiscoveryJob, as_utc, utcnow
from app.services.job_queue import EXHAUSTED_JOB_MESSAGE, STUCK_JOB_MESSAGE


def test_enqueue_deduplicates_active_jobs(queue):
    """Only one queued/processing job may exist per series and job shape."""
    first = queue.enqueue("tt0903747", series_title="Breaking Bad")
    second = queue.enqueue("tt0903747", series_title="Breaking Bad", priority=10)

    assert second.id == first.id
    assert queue.counts()[JobStatus.QUEUED] == 1


def test_enqueue_distinguishes_job_shapes(queue):
    series = queue.enqueue("tt0903747")
    season = queue.enqueue(
        "tt0903747", discovery_type=DiscoveryType.FULL_SEASON, season_number=2
    )
    other_season = queue.enqueue(
        "tt0903747", discovery_type=DiscoveryType.FULL_SEASON, season_number=3
    )

    assert len({series.id, season.id, other_season.id}) == 3


def test_enqueue_after_completion_creates_new_job(queue):
    job = queue.enqueue("tt0903747")
    queue.mark_processing(job.id)
    queue.mark_completed(job.id, {"totalEpisodes": 62}, 62)

    again = queue.enqueue("tt0903747")

    assert again.id != job.id
    assert again.status == JobStatus.QUEUED


def test_next_job_orders_by_priority_then_age(queue):
    low = queue.enqueue("tt0000001", priority=1)
    high = queue.enqueue("tt0000002", priority=10)
    medium_old = queue.enqueue("tt0000003", priority=5)
    queue.enqueue("tt0000004", priority=5)

    assert queue.next_job(3).id == high.id
    queue.mark_processing(high.id)
    assert queue.next_job(3).id == medium_old.id

    queue.mark_processing(medium_old.id)
    queue.mark_processing(queue.next_job(3).id)
    assert queue.next_job(3).id == low.id


def test_next_job_skips_exhausted_jobs(queue, engine):
    job = queue.enqueue("tt0000001")
    with Session(engine) as session:
        row = session.get(DiscoveryJob, job.id)
        row.attempts = 3
        session.add(row)
        session.commit()

    assert queue.next_job(3) is None
    assert queue.next_job(4).id == job.id
    assert not queue.has_active_job("tt0000001")
    assert queue.enqueue("tt0000001").id != job.id


def test_mark_processing_claims_once(queue):
    job = queue.enqueue("tt0000001")

    claimed = queue.mark_processing(job.id)
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.started_at is not None

    assert queue.mark_processing(job.id) is None


def test_mark_failed_keeps_job_inspectable(queue):
    job = queue.enqueue("tt0000001")
    queue.mark_processing(job.id)
    queue.mark_failed(job.id, "Request limit reached!")

    failed = queue.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_message == "Request limit reached!"
    assert failed.completed_at is not None
    assert queue.latest_failed_job("tt0000001").id == job.id
    assert not queue.has_active_job("tt0000001")


def test_reset_stuck_jobs(queue, engine):
    """Jobs processing past the timeout go back to queued with attempts intact."""
    stuck = queue.enqueue("tt0000001")
    fresh = queue.enqueue("tt0000002")
    queue.mark_processing(stuck.id)
    queue.mark_processing(fresh.id)

    with Session(engine) as session:
        row = session.get(DiscoveryJob, stuck.id)
        row.started_at = utcnow() - timedelta(minutes=11)
        session.add(row)
        session.commit()

    assert queue.reset_stuck_jobs(600) == 1

    reset = queue.get_job(stuck.id)
    assert reset.status == JobStatus.QUEUED
    assert reset.attempts == 1
    assert reset.started_at is None
    assert reset.error_message == STUCK_JOB_MESSAGE
    assert queue.get_job(fresh.id).status == JobStatus.PROCESSING


def test_retry_failed(queue):
    job = queue.enqueue("tt0000001")
    assert queue.retry_failed(job.id) is None  # Still queued

    queue.mark_processing(job.id)
    queue.mark_failed(job.id, "boom")
    retried = queue.retry_failed(job.id)

    assert retried.status == JobStatus.QUEUED
    assert retried.attempts == 0
    assert queue.next_job(3).id == job.id


def test_list_jobs_filters(queue):
    queue.enqueue("tt0000001")
    done = queue.enqueue("tt0000002")
    queue.mark_processing(done.id)
    queue.mark_completed(done.id, {}, 0)

    assert [j.series_id for j in queue.list_jobs(status=JobStatus.COMPLETED)] == [
        "tt0000002"
    ]
    assert len(queue.list_jobs(series_id="tt0000001")) == 1
    assert len(queue.list_jobs(limit=1)) == 1


def test_counts_and_processing_job(queue):
    counts = queue.counts()
    assert set(counts) == set(JobStatus)
    assert all(n == 0 for n in counts.values())

    job = queue.enqueue("tt0000001", series_title="Some Show")
    queue.enqueue("tt0000002")
    queue.mark_processing(job.id)

    counts = queue.counts()
    assert counts[JobStatus.QUEUED] == 1
    assert counts[JobStatus.PROCESSING] == 1
    assert queue.processing_job().series_title == "Some Show"

    queue.clear()
    assert queue.counts()[JobStatus.QUEUED] == 0


def test_timestamps_round_trip_as_utc(queue):
    before = utcnow()
    job = queue.enqueue("tt0000001")
    claimed = queue.mark_processing(job.id)
    queue.mark_completed(job.id, {"totalEpisodes": 1}, 1)
    done = queue.get_job(job.id)

    created = as_utc(done.created_at)
    started = as_utc(claimed.started_at)
    completed = as_utc(done.completed_at)
    assert created.tzinfo == timezone.utc
    assert before - timedelta(seconds=1) <= created <= started <= completed
    assert completed <= utcnow()


def backdate_start(engine, job_id, minutes=30):
    with Session(engine) as session:
        row = session.get(DiscoveryJob, job_id)
        row.started_at = utcnow() - timedelta(minutes=minutes)
        session.add(row)
        session.commit()


def test_job_stuck_on_every_attempt_ends_failed(queue, engine):
    """A job that crashes the worker each time stops counting as in flight."""
    job = queue.enqueue("tt0000001")

    for attempt in range(1, 4):
        assert queue.next_job().id == job.id
        assert queue.mark_processing(job.id).attempts == attempt
        backdate_start(engine, job.id)
        assert queue.reset_stuck_jobs(600) == 1

    failed = queue.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_message == EXHAUSTED_JOB_MESSAGE.format(max_attempts=3)
    assert failed.completed_at is not None
    assert queue.next_job() is None
    assert not queue.has_active_job("tt0000001")

    retried = queue.retry_failed(job.id)
    assert retried.status == JobStatus.QUEUED
    assert retried.attempts == 0


def test_reset_stuck_jobs_uses_given_attempt_limit(queue, engine):
    job = queue.enqueue("tt0000001")
    queue.mark_processing(job.id)
    backdate_start(engine, job.id)

    assert queue.reset_stuck_jobs(600, max_attempts=1) == 1
    assert queue.get_job(job.id).status == JobStatus.FAILED
