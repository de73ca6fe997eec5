"""
Periodic scheduler.

Every instance holds an identical registration table and runs the same
timer. When a registration becomes due, each instance tries to claim the
(periodic_id, due instant) pair through the transport; only the claimant
publishes the occurrence to the periodic queue, and the periodic queue
delivers it to exactly one consumer. Instances that lose the claim simply
advance their local due time.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from jobdispatch.config import Settings, get_settings
from jobdispatch.constants import HEADER_DUE_AT, SPAN_CLAIM_OCCURRENCE
from jobdispatch.errors import DuplicatePeriodicId, TransportUnavailable
from jobdispatch.observability.metrics import MetricsCollector, get_metrics
from jobdispatch.observability.tracing import job_span
from jobdispatch.publisher import Publisher
from jobdispatch.types.envelope import JobEnvelope, Schedule, utcnow

logger = logging.getLogger(__name__)

ScheduleSpec = Schedule | str | float | int | timedelta


def as_schedule(schedule: ScheduleSpec) -> Schedule:
    """
    Normalize a schedule argument.

    Strings are cron expressions, numbers and timedeltas are intervals.
    """
    if isinstance(schedule, Schedule):
        return schedule
    if isinstance(schedule, str):
        return Schedule.from_cron(schedule)
    if isinstance(schedule, timedelta):
        return Schedule.every(schedule.total_seconds())
    return Schedule.every(float(schedule))


@dataclass
class PeriodicRegistration:
    """
    One registered periodic job.

    next_due_at is owned by the scheduler and only advances.
    """

    periodic_id: str
    job_type: str
    arguments: bytes
    schedule: Schedule
    timeout: float
    next_due_at: datetime

    def envelope(self, now: datetime) -> JobEnvelope:
        """Occurrence envelope published to the periodic queue."""
        return JobEnvelope(
            job_type=self.job_type,
            arguments=self.arguments,
            timeout=self.timeout,
            periodic_id=self.periodic_id,
            schedule=self.schedule,
            enqueued_at=now,
        )


class PeriodicScheduler:
    """
    Owns the registration table and fires each due occurrence once
    cluster-wide.

    Registration happens at startup; the table is read-only once the
    scheduler has started.
    """

    def __init__(
        self,
        publisher: Publisher,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] | None = None,
        instance_id: str | None = None,
    ):
        settings = settings or get_settings()
        self.publisher = publisher
        self.transport = publisher.transport
        self.tick_interval = settings.scheduler_tick_seconds
        self.claim_ttl = settings.periodic_claim_ttl_seconds
        self.clock = clock or publisher.clock
        self.instance_id = instance_id or f"{settings.worker_id}-{uuid4().hex[:8]}"

        self._registrations: dict[str, PeriodicRegistration] = {}
        self._frozen = False
        self._running = False
        self._wakeup = asyncio.Event()
        self._metrics = metrics or get_metrics()

    @property
    def registrations(self) -> Mapping[str, PeriodicRegistration]:
        return MappingProxyType(self._registrations)

    def register(
        self,
        periodic_id: str,
        job_type: str,
        arguments: bytes | BaseModel | dict[str, Any] | None,
        schedule: ScheduleSpec,
        timeout: float | None = None,
    ) -> PeriodicRegistration:
        """
        Register a periodic job.

        Raises:
            DuplicatePeriodicId: If the id is already registered.
            RuntimeError: If the scheduler has already started.
        """
        if self._frozen:
            raise RuntimeError("Periodic jobs must be registered before the scheduler starts")
        if periodic_id in self._registrations:
            raise DuplicatePeriodicId(periodic_id)

        schedule = as_schedule(schedule)
        template = self.publisher.build_envelope(job_type, arguments, timeout=timeout)
        registration = PeriodicRegistration(
            periodic_id=periodic_id,
            job_type=job_type,
            arguments=template.arguments,
            schedule=schedule,
            timeout=template.timeout,
            next_due_at=schedule.next_due(self.clock()),
        )
        self._registrations[periodic_id] = registration

        logger.info(
            "Registered periodic job",
            extra={
                "periodic_id": periodic_id,
                "job_type": job_type,
                "next_due_at": registration.next_due_at.isoformat(),
            },
        )
        return registration

    def claim_key(self, periodic_id: str, due_at: datetime) -> str:
        return f"periodic:{periodic_id}:{due_at.timestamp():.3f}"

    async def tick(self, now: datetime | None = None) -> list[tuple[str, datetime]]:
        """
        Fire every due registration once.

        A registration whose claim or publish fails because the broker is
        unreachable keeps its due time and is retried on the next tick.

        Returns:
            (periodic_id, due_at) pairs this instance claimed and published.
        """
        now = now or self.clock()
        fired = []

        for registration in self._registrations.values():
            if now < registration.next_due_at:
                continue

            due_at = registration.schedule.latest_due(registration.next_due_at, now)
            try:
                won = await self._claim_and_publish(registration, due_at, now)
            except TransportUnavailable as e:
                logger.warning(
                    "Periodic occurrence postponed, transport unavailable",
                    extra={"periodic_id": registration.periodic_id, "error": str(e)},
                )
                continue

            registration.next_due_at = registration.schedule.next_due(now)
            if won:
                fired.append((registration.periodic_id, due_at))

        return fired

    async def _claim_and_publish(
        self,
        registration: PeriodicRegistration,
        due_at: datetime,
        now: datetime,
    ) -> bool:
        envelope = registration.envelope(now)
        with job_span(SPAN_CLAIM_OCCURRENCE, envelope, due_at=due_at.isoformat()) as span:
            won = await self.transport.claim(
                self.claim_key(registration.periodic_id, due_at),
                self.claim_ttl,
                owner=self.instance_id,
            )
            span.set_attribute("claim.won", won)

            if not won:
                logger.debug(
                    "Periodic occurrence claimed elsewhere",
                    extra={"periodic_id": registration.periodic_id, "due_at": due_at.isoformat()},
                )
                return False

            await self.publisher.publish_envelope(envelope, headers={HEADER_DUE_AT: due_at.isoformat()})

        self._metrics.record_periodic_claimed(registration.periodic_id)
        logger.info(
            "Periodic occurrence claimed",
            extra={"periodic_id": registration.periodic_id, "due_at": due_at.isoformat()},
        )
        return True

    def seconds_until_next_due(self, now: datetime | None = None) -> float:
        if not self._registrations:
            return self.tick_interval
        now = now or self.clock()
        earliest = min(r.next_due_at for r in self._registrations.values())
        return max(0.05, min(self.tick_interval, (earliest - now).total_seconds()))

    async def start(self) -> None:
        """Run the scheduler timer until stop() is called."""
        self._frozen = True
        self._running = True
        logger.info(
            "Periodic scheduler starting",
            extra={"registrations": len(self._registrations), "instance_id": self.instance_id},
        )

        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), self.seconds_until_next_due())
            except asyncio.TimeoutError:
                pass

        logger.info("Periodic scheduler stopped")

    async def stop(self) -> None:
        """Stop the scheduler timer."""
        logger.info("Periodic scheduler stopping")
        self._running = False
        self._wakeup.set()
