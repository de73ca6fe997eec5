"""
Job envelope: one unit of work plus its scheduling metadata.

Envelopes are immutable. Retries, periodic occurrences and manual
republishing all produce new envelopes derived from an existing one.
"""

import math
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from jobdispatch.constants import DEFAULT_TIMEOUT_SECONDS
from jobdispatch.cron import CronExpression, next_occurrence


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Schedule(BaseModel):
    """
    Recurrence of a periodic job.

    Exactly one of interval_seconds or cron is set. Interval schedules are
    aligned to multiples of the interval since the Unix epoch so that every
    instance computes the same due instants.
    """

    model_config = ConfigDict(frozen=True)

    interval_seconds: float | None = Field(default=None, gt=0)
    cron: str | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "Schedule":
        if (self.interval_seconds is None) == (self.cron is None):
            raise ValueError("exactly one of interval_seconds or cron must be set")
        if self.cron is not None:
            CronExpression.parse(self.cron)
        return self

    @classmethod
    def every(cls, seconds: float) -> "Schedule":
        return cls(interval_seconds=seconds)

    @classmethod
    def from_cron(cls, expression: str) -> "Schedule":
        return cls(cron=expression)

    def next_due(self, after: datetime) -> datetime:
        """First due instant strictly after `after`."""
        after = _as_utc(after)
        if self.interval_seconds is not None:
            ticks = math.floor(after.timestamp() / self.interval_seconds) + 1
            return datetime.fromtimestamp(ticks * self.interval_seconds, tz=timezone.utc)
        return next_occurrence(self.cron, after)

    def latest_due(self, due: datetime, now: datetime) -> datetime:
        """
        Latest due instant in [due, now].

        Used to collapse missed occurrences after downtime into one.
        """
        now = _as_utc(now)
        if self.interval_seconds is not None:
            ticks = math.floor(now.timestamp() / self.interval_seconds)
            latest = datetime.fromtimestamp(ticks * self.interval_seconds, tz=timezone.utc)
            return max(latest, due)
        following = self.next_due(due)
        while following <= now:
            due = following
            following = self.next_due(due)
        return due


class JobEnvelope(BaseModel):
    """
    Serialized job plus scheduling metadata.

    Invariants:
    - attempt >= 0
    - timeout > 0
    - periodic_id is set if and only if schedule is set
    """

    model_config = ConfigDict(
        frozen=True,
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )

    id: UUID = Field(default_factory=uuid4)
    job_type: str = Field(min_length=1)
    arguments: bytes = b""
    timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    attempt: int = Field(default=0, ge=0)
    not_before: datetime | None = None
    periodic_id: str | None = None
    schedule: Schedule | None = None
    enqueued_at: datetime = Field(default_factory=utcnow)
    last_error: str | None = None

    @field_validator("not_before", "enqueued_at")
    @classmethod
    def _normalize_tz(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def _periodic_has_schedule(self) -> "JobEnvelope":
        if (self.periodic_id is None) != (self.schedule is None):
            raise ValueError("periodic_id and schedule must be set together")
        return self

    @property
    def is_periodic(self) -> bool:
        return self.periodic_id is not None

    def is_due(self, now: datetime | None = None) -> bool:
        """Check whether not_before has elapsed."""
        if self.not_before is None:
            return True
        return self.not_before <= _as_utc(now or utcnow())

    def successor(
        self,
        delay_seconds: float,
        error: str | None = None,
        now: datetime | None = None,
    ) -> "JobEnvelope":
        """Envelope for the next attempt after a failure."""
        now = _as_utc(now or utcnow())
        return self.model_copy(
            update={
                "attempt": self.attempt + 1,
                "not_before": now + timedelta(seconds=delay_seconds),
                "enqueued_at": now,
                "last_error": error,
            }
        )

    def with_error(self, error: str | None) -> "JobEnvelope":
        """Same envelope annotated with its most recent failure."""
        return self.model_copy(update={"last_error": error})

    def reset(self, now: datetime | None = None) -> "JobEnvelope":
        """Fresh first attempt, used when republishing from the failed queue."""
        return self.model_copy(
            update={
                "attempt": 0,
                "not_before": None,
                "enqueued_at": _as_utc(now or utcnow()),
                "last_error": None,
            }
        )

    def occurrence(self, now: datetime | None = None) -> "JobEnvelope":
        """Immediate, non-periodic envelope executing one periodic occurrence."""
        return JobEnvelope(
            job_type=self.job_type,
            arguments=self.arguments,
            timeout=self.timeout,
            enqueued_at=_as_utc(now or utcnow()),
        )
