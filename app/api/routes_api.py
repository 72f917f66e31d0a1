"""JSON API for the episode discovery service."""

from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from app.core.exceptions import StoreError
from app.models.media import Episode, JobStatus, Priority, QueueStatus, SeriesStatus
from app.models.tables import DiscoveryJob
from app.services.discovery_runtime import runtime

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "reelshelf",
        "worker": runtime.processor.get_processing_stats(),
        "scheduler": runtime.scheduler.get_status(),
    }


# --- Series ---


class DiscoverRequest(BaseModel):
    """Request body for queueing series discovery."""

    series_title: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    requested_by: Optional[str] = None


def _job_response(job: DiscoveryJob | None) -> dict:
    if job is None:
        return {"queued": False, "job": None}
    return {"queued": True, "job": job.model_dump(mode="json")}


@router.post("/series/{series_id}/discover")
async def discover_series(series_id: str, request: DiscoverRequest | None = None):
    """Queue discovery of a series, one of its seasons, or a single episode."""
    request = request or DiscoverRequest()
    if request.episode_number is not None and request.season_number is None:
        raise HTTPException(
            status_code=400, detail="season_number is required with episode_number"
        )

    status = runtime.status
    try:
        if request.episode_number is not None:
            job = status.enqueue_episode(
                series_id,
                request.season_number,
                request.episode_number,
                series_title=request.series_title,
                priority=request.priority,
                requested_by=request.requested_by,
            )
        elif request.season_number is not None:
            job = status.enqueue_season(
                series_id,
                request.season_number,
                series_title=request.series_title,
                priority=request.priority,
                requested_by=request.requested_by,
            )
        else:
            job = status.enqueue_series(
                series_id,
                series_title=request.series_title,
                priority=request.priority,
                requested_by=request.requested_by,
            )
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _job_response(job)


@router.post("/series/{series_id}/refresh")
async def refresh_series(series_id: str, series_title: Optional[str] = None):
    """Drop cached data for a series and rediscover it at high priority."""
    try:
        job = runtime.status.force_refresh_series(series_id, series_title)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _job_response(job)


@router.get("/series/{series_id}/status", response_model=SeriesStatus)
async def series_status(series_id: str):
    return runtime.status.get_series_status(series_id)


@router.get("/series/{series_id}/seasons/{season_number}", response_model=List[Episode])
async def season_episodes(series_id: str, season_number: int):
    """Cached episodes of a season.

    Returns 404 when the season is not cached yet; the ``discovering`` flag in
    the error detail tells the caller whether a job is already on its way.
    """
    episodes = runtime.status.get_season_episodes(series_id, season_number)
    if episodes is None:
        status = runtime.status.get_series_status(series_id)
        raise HTTPException(
            status_code=404,
            detail={
                "message": "Season not cached",
                "discovering": status.is_being_fetched,
                "last_error": status.last_error,
            },
        )
    return episodes


# --- Queue & jobs ---


@router.get("/queue", response_model=QueueStatus)
async def queue_status():
    return runtime.status.get_queue_status()


@router.get("/jobs")
async def list_jobs(
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    series_id: Optional[str] = Query(None, description="Filter by series"),
    limit: int = Query(50, ge=1, le=500),
):
    """List discovery jobs, highest priority first."""
    try:
        jobs = runtime.queue.list_jobs(status=status, series_id=series_id, limit=limit)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"jobs": [job.model_dump(mode="json") for job in jobs]}


@router.get("/jobs/{job_id}")
async def get_job(job_id: int):
    try:
        job = runtime.queue.get_job(job_id)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.model_dump(mode="json")


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: int):
    """Requeue a failed job with a fresh attempt budget."""
    try:
        job = runtime.queue.retry_failed(job_id)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if job is None:
        raise HTTPException(status_code=409, detail="Only failed jobs can be retried")
    runtime.processor.notify()
    return job.model_dump(mode="json")


# --- Cache ---


@router.get("/cache/stats")
async def cache_stats():
    return asdict(runtime.cache.get_stats())
