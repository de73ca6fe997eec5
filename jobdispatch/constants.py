"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class QueueClass(StrEnum):
    """
    Logical queue classes.

    Message flow:
    - REGULAR / LONG_RUNNING: executed immediately by their consumer pools
    - DELAYED: holding construct, released to its target once not_before elapses
    - RETRY: released retry successors, executed by the retry pool
    - PERIODIC: claimed periodic occurrences, turned into regular envelopes
    - FAILED: terminal, inspected and republished manually
    """

    REGULAR = "regular"
    LONG_RUNNING = "long-running"
    DELAYED = "delayed"
    RETRY = "retry"
    PERIODIC = "periodic"
    FAILED = "failed"


class TerminalReason(StrEnum):
    """Reasons a message ends up in the failed queue."""

    RETRIES_EXHAUSTED = "retries-exhausted"
    SERIALIZATION_ERROR = "serialization-error"


# Queue classes that hold messages ready for execution
EXECUTABLE_QUEUE_CLASSES: tuple[QueueClass, ...] = (
    QueueClass.REGULAR,
    QueueClass.LONG_RUNNING,
    QueueClass.RETRY,
    QueueClass.PERIODIC,
)

# Default values
DEFAULT_TIMEOUT_SECONDS = 5.0
LONG_RUNNING_THRESHOLD_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 25
DEFAULT_BATCH_SIZE = 100
DEFAULT_RETRY_OFFSET_SECONDS = 15.0
DEFAULT_RETRY_EXPONENT = 4

# Message headers
HEADER_JOB_ID = "x-job-id"
HEADER_JOB_TYPE = "x-job-type"
HEADER_ATTEMPT = "x-attempt"
HEADER_QUEUE_CLASS = "x-queue-class"
HEADER_DUE_AT = "x-due-at"
HEADER_TERMINAL_REASON = "x-terminal-reason"
HEADER_ERROR = "x-error"
HEADER_SOURCE_QUEUE = "x-source-queue"

# Metrics names
METRIC_QUEUE_DEPTH = "jobdispatch_queue_depth"
METRIC_JOBS_PUBLISHED = "jobdispatch_jobs_published_total"
METRIC_JOBS_COMPLETED = "jobdispatch_jobs_completed_total"
METRIC_JOB_DURATION = "jobdispatch_job_duration_seconds"
METRIC_RETRIES_SCHEDULED = "jobdispatch_retries_scheduled_total"
METRIC_JOBS_EXHAUSTED = "jobdispatch_jobs_exhausted_total"
METRIC_PERIODIC_CLAIMED = "jobdispatch_periodic_occurrences_claimed_total"
METRIC_BATCH_FLUSHES = "jobdispatch_batch_flushes_total"

# Trace span names
SPAN_PUBLISH_JOB = "publish_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_CLAIM_OCCURRENCE = "claim_periodic_occurrence"

# API constants
API_V1_PREFIX = "/v1"
