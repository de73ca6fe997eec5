"""
Exception taxonomy.

Job-body failures (ExecutionFailure and subclasses) are handled inside the
worker pool and never reach publishers. TransportUnavailable is a
connection-level failure and is unrelated to the job retry policy.
"""

from uuid import UUID


class JobDispatchError(Exception):
    """Base class for all errors raised by jobdispatch."""


class SerializationError(JobDispatchError):
    """A payload could not be encoded or decoded. Never retried."""


class ExecutionFailure(JobDispatchError):
    """A job body raised or reported failure."""

    def __init__(
        self,
        message: str,
        job_id: UUID | None = None,
        job_type: str | None = None,
        attempt: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.job_id = job_id
        self.job_type = job_type
        self.attempt = attempt


class TimeoutFailure(ExecutionFailure):
    """A job exceeded its timeout budget."""


class UnknownJobType(ExecutionFailure):
    """No handler is registered for the envelope's job type."""


class RetriesExhausted(JobDispatchError):
    """A job failed on its final permitted attempt."""

    def __init__(self, job_id: UUID, attempt: int, last_error: str | None = None):
        super().__init__(f"Job {job_id} exhausted retries after attempt {attempt}")
        self.job_id = job_id
        self.attempt = attempt
        self.last_error = last_error


class DuplicatePeriodicId(JobDispatchError):
    """A periodic job id was registered twice."""

    def __init__(self, periodic_id: str):
        super().__init__(f"Periodic job id already registered: {periodic_id}")
        self.periodic_id = periodic_id


class TransportUnavailable(JobDispatchError):
    """The broker could not be reached after connection-level retries."""
