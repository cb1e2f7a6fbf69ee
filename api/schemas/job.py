"""
Pydantic schemas for the /jobs endpoints.

These are NOT database models — they define the HTTP API contract:
- JobEnqueue: what a caller sends to submit deferred work
- EnqueueResponse: which path the submission took (skipped/immediate/deferred/scheduled)
- JobResponse / JobListResponse: job records for the admin views
- JobStats, PromotionResponse, CleanupRequest/CleanupResponse: admin operations
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class JobEnqueue(BaseModel):
    """Request body for POST /jobs/."""

    job_name: str = Field(..., min_length=1, max_length=255, examples=["verifyEmail"])
    payload: dict = Field(
        default_factory=dict,
        examples=[{"recipient": "client@example.com"}],
    )
    run_at: Optional[datetime] = Field(
        default=None,
        description="Earliest execution time; wins over delay_seconds",
    )
    delay_seconds: Optional[float] = Field(default=None, ge=0)
    priority: Optional[int] = Field(default=None, description="Higher = promoted first")
    max_attempts: Optional[int] = Field(default=None, ge=1, le=25)
    promotion_window_minutes: Optional[int] = Field(default=None, ge=0)


class EnqueueResponse(BaseModel):
    """Response body for POST /jobs/ — exactly one outcome tag is true."""

    success: bool
    skipped: bool = False
    immediate: bool = False
    deferred: bool = False
    scheduled: bool = False
    reason: Optional[str] = None
    job_id: Optional[UUID] = None

    model_config = {"from_attributes": True}


class JobResponse(BaseModel):
    """A single job record."""

    id: UUID
    job_name: str
    dedup_key: str
    status: str
    payload: dict
    result: Optional[dict] = None
    run_at: datetime
    priority: int
    attempts: int
    max_attempts: int
    promotion_window_minutes: int
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    # read from SQLAlchemy model attributes instead of requiring a dict
    model_config = {"from_attributes": True}


class JobListResponse(BaseModel):
    """Paginated list of jobs — returned by GET /jobs/."""

    jobs: list[JobResponse]
    total: int       # total matching jobs (ignoring pagination)
    page: int
    page_size: int
    pages: int


class PromoterStatus(BaseModel):
    running: bool
    currently_promoting: bool


class JobStats(BaseModel):
    """Aggregate job statistics — returned by GET /jobs/stats."""

    total: int
    pending: int
    promoted: int
    completed: int
    failed: int
    cancelled: int
    overdue: int     # pending and already past run_at
    upcoming: int    # pending and not due yet
    promoter: PromoterStatus


class PromotionResponse(BaseModel):
    promoted: int
    failed: int
    recovered: int = 0
    busy: bool


class CleanupRequest(BaseModel):
    retention_days: int = Field(default=7, ge=0)


class CleanupResponse(BaseModel):
    deleted_count: int
    retention_days: int
