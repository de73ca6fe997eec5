"""
Retry policy.

Stateless: the decision depends only on the attempt count of the failed
envelope. The delay curve is attempt ** 4 + 15 seconds, which spreads the
25 retries over roughly 20 days.
"""

from dataclasses import dataclass

from jobdispatch.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_EXPONENT,
    DEFAULT_RETRY_OFFSET_SECONDS,
)
from jobdispatch.types.envelope import JobEnvelope


@dataclass(frozen=True)
class Retry:
    """Schedule another attempt after `delay_seconds`."""

    delay_seconds: float


@dataclass(frozen=True)
class Exhausted:
    """No attempts left, the job goes to the failed queue."""

    attempts: int


RetryDecision = Retry | Exhausted


def backoff_delay(
    attempt: int,
    offset: float = DEFAULT_RETRY_OFFSET_SECONDS,
    exponent: int = DEFAULT_RETRY_EXPONENT,
) -> float:
    """Delay in seconds before retrying an envelope that failed on `attempt`."""
    return float(attempt**exponent + offset)


class RetryPolicy:
    """
    Computes the next attempt for a failed job.

    A job may be retried max_attempts times; an envelope failing with
    attempt >= max_attempts is exhausted.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        offset_seconds: float = DEFAULT_RETRY_OFFSET_SECONDS,
        exponent: int = DEFAULT_RETRY_EXPONENT,
    ):
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self.max_attempts = max_attempts
        self.offset_seconds = offset_seconds
        self.exponent = exponent

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, self.offset_seconds, self.exponent)

    def next_attempt(self, envelope: JobEnvelope, failure: BaseException | str | None = None) -> RetryDecision:
        """
        Decide what happens after `envelope` failed.

        Args:
            envelope: The envelope whose execution failed.
            failure: The failure, informational only.

        Returns:
            Retry with the backoff delay, or Exhausted.
        """
        if envelope.attempt >= self.max_attempts:
            return Exhausted(attempts=envelope.attempt)
        return Retry(delay_seconds=self.delay_for(envelope.attempt))

    def total_delay(self) -> float:
        """Cumulative delay across every permitted retry."""
        return sum(self.delay_for(attempt) for attempt in range(self.max_attempts))
