"""
Job endpoints: submission plus the admin views over the job record store.

POST /jobs/                 → Enqueue deferred work (persists first, then fast path)
GET  /jobs/                 → List records, optionally by status, paginated
GET  /jobs/stats            → Counts per status + overdue/upcoming + promoter state
GET  /jobs/overdue          → Pending records already past run_at
POST /jobs/promote          → Run one promotion pass now
POST /jobs/cleanup          → Delete finished records older than N days
GET  /jobs/{job_id}         → A single record
POST /jobs/{job_id}/cancel  → Cancel a pending/promoted record
POST /jobs/{job_id}/retry   → Put a failed record back to pending

The endpoints are plain `def`: the store and broker clients are synchronous,
and FastAPI runs sync endpoints in its threadpool.

Static paths are declared before /{job_id} so "stats" is never parsed as a UUID.
"""

import math
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_job_system
from api.schemas.job import (
    CleanupRequest,
    CleanupResponse,
    EnqueueResponse,
    JobEnqueue,
    JobListResponse,
    JobResponse,
    JobStats,
    PromoterStatus,
    PromotionResponse,
)
from models.enums import JobStatus
from outbox.errors import (
    JobNotFoundError,
    PersistenceError,
    RejectedOperationError,
)
from scheduler.runtime import JobSystem

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/", response_model=EnqueueResponse, status_code=201)
def enqueue_job(
    job_in: JobEnqueue,
    system: JobSystem = Depends(get_job_system),
) -> EnqueueResponse:
    """
    Submit deferred work.

    The record is written to the store before anything else. If that
    succeeds the job will run, whatever the response's outcome tag says:
    "immediate" went straight to the broker, "deferred" and "scheduled"
    wait for the promoter, "skipped" means an active duplicate exists.
    """
    try:
        result = system.dispatcher.enqueue(
            job_in.job_name,
            job_in.payload,
            run_at=job_in.run_at,
            delay=job_in.delay_seconds,
            priority=job_in.priority,
            max_attempts=job_in.max_attempts,
            promotion_window_minutes=job_in.promotion_window_minutes,
        )
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {e}")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return EnqueueResponse.model_validate(result)


@router.get("/", response_model=JobListResponse)
def list_jobs(
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Jobs per page"),
    system: JobSystem = Depends(get_job_system),
) -> JobListResponse:
    """List records soonest run_at first, newest submission first among equals."""
    try:
        result = system.outbox.list_by_status(status, page=page, page_size=page_size)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {e}")

    return JobListResponse(
        jobs=[JobResponse.model_validate(r) for r in result.records],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=math.ceil(result.total / result.page_size) if result.total else 0,
    )


@router.get("/stats", response_model=JobStats)
def get_job_stats(system: JobSystem = Depends(get_job_system)) -> JobStats:
    try:
        counts = system.outbox.stats()
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {e}")
    return JobStats(**counts, promoter=PromoterStatus(**system.promoter.status()))


@router.get("/overdue", response_model=list[JobResponse])
def list_overdue_jobs(
    limit: int = Query(100, ge=1, le=1000),
    system: JobSystem = Depends(get_job_system),
) -> list[JobResponse]:
    """Pending records past their run_at. A long list here means promotion is stuck."""
    try:
        records = system.outbox.find_overdue(limit=limit)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {e}")
    return [JobResponse.model_validate(r) for r in records]


@router.post("/promote", response_model=PromotionResponse)
def promote_now(
    window_minutes: Optional[int] = Query(None, ge=0, description="Override every record's window"),
    system: JobSystem = Depends(get_job_system),
) -> PromotionResponse:
    """
    Run one promotion pass immediately.

    If a pass is already running (periodic or another manual trigger) this
    returns busy=true without doing anything.
    """
    try:
        result = system.promoter.run_once(window_minutes=window_minutes)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {e}")
    return PromotionResponse(**result.to_dict())


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_jobs(
    body: CleanupRequest,
    system: JobSystem = Depends(get_job_system),
) -> CleanupResponse:
    try:
        deleted = system.outbox.cleanup_older_than(body.retention_days)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {e}")
    return CleanupResponse(deleted_count=deleted, retention_days=body.retention_days)


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: UUID,
    system: JobSystem = Depends(get_job_system),
) -> JobResponse:
    """Get a single job record by its UUID."""
    try:
        record = system.outbox.get_or_raise(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {e}")
    return JobResponse.model_validate(record)


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(
    job_id: UUID,
    system: JobSystem = Depends(get_job_system),
) -> JobResponse:
    """
    Cancel a job that has not finished.

    A promoted job still waiting in Redis is removed from the queue. One a
    worker already picked up runs to the end, but its result is discarded.
    Finished jobs (completed, failed, cancelled) answer 409.
    """
    try:
        record = system.cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RejectedOperationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {e}")
    return JobResponse.model_validate(record)


@router.post("/{job_id}/retry", response_model=JobResponse)
def retry_job(
    job_id: UUID,
    system: JobSystem = Depends(get_job_system),
) -> JobResponse:
    """
    Give a failed job a fresh set of attempts, due now.

    Only failed jobs can be retried. If an active job with the same
    dedup key was submitted since, the retry is refused with 409.
    """
    try:
        record = system.outbox.retry(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RejectedOperationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {e}")
    return JobResponse.model_validate(record)
