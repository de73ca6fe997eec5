"""
Admin API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    transport: str
    queue_depths: dict[str, int] = Field(default_factory=dict)
    timestamp: datetime


class FailedJobResponse(BaseModel):
    """A message parked in the failed queue."""

    job_id: UUID | None
    job_type: str | None
    attempt: int | None
    reason: str
    error: str | None
    source_queue: str | None
    enqueued_at: datetime | None


class FailedJobListResponse(BaseModel):
    """Oldest messages of the failed queue."""

    jobs: list[FailedJobResponse]
    total: int


class RepublishRequest(BaseModel):
    """Request body for republishing failed jobs."""

    limit: int = Field(default=50, ge=1, le=1000, description="Maximum jobs to republish")


class RepublishResponse(BaseModel):
    """Response body after republishing failed jobs."""

    republished: list[UUID]
    count: int
    message: str = "Jobs republished"


class ErrorResponse(BaseModel):
    """Error response."""

    detail: str


class PublishJobRequest(BaseModel):
    """Request body for publishing a job."""

    job_type: str = Field(..., min_length=1, description="Registered job type")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Job arguments")
    delay_seconds: float | None = Field(default=None, ge=0, description="Delay before the job may run")
    timeout: float | None = Field(default=None, gt=0, description="Execution budget in seconds")


class PublishJobResponse(BaseModel):
    """Response body after publishing a job."""

    id: UUID
    job_type: str
    not_before: datetime | None
    message: str = "Job published"
