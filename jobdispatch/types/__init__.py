"""
Type definitions for the dispatcher.
Contains the envelope, execution context and admin API types.
"""

from jobdispatch.types.api import (
    ErrorResponse,
    FailedJobListResponse,
    FailedJobResponse,
    HealthResponse,
    PublishJobRequest,
    PublishJobResponse,
    RepublishRequest,
    RepublishResponse,
)
from jobdispatch.types.envelope import JobEnvelope, Schedule, utcnow
from jobdispatch.types.job import JobContext, JobResult

__all__ = [
    # Envelope types
    "JobEnvelope",
    "Schedule",
    "utcnow",
    # Job types
    "JobContext",
    "JobResult",
    # API types
    "HealthResponse",
    "PublishJobRequest",
    "PublishJobResponse",
    "FailedJobResponse",
    "FailedJobListResponse",
    "RepublishRequest",
    "RepublishResponse",
    "ErrorResponse",
]
