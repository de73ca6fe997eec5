"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel

from jobdispatch.constants import QueueClass

if TYPE_CHECKING:
    from jobdispatch.worker.factory import ExecutionScope


class JobResult(BaseModel):
    """
    Result of job execution.

    Handlers may return a JobResult, or return anything else (including
    None) to signal success. Raising is always a failure.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the per-batch execution scope.
    """

    job_id: UUID
    job_type: str
    attempt: int
    max_attempts: int
    queue_class: QueueClass
    arguments: Any
    worker_id: str
    deadline: datetime
    scope: "ExecutionScope | None" = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure now would exhaust retries."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
