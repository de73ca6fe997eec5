"""
Queue routing.

Maps an envelope to the queue class it belongs to. Routing is pure: the
only input besides the envelope is the instant used to decide whether
not_before is still in the future.
"""

from datetime import datetime

from jobdispatch.constants import LONG_RUNNING_THRESHOLD_SECONDS, QueueClass
from jobdispatch.types.envelope import JobEnvelope, utcnow


def route(
    envelope: JobEnvelope,
    now: datetime | None = None,
    long_running_threshold: float = LONG_RUNNING_THRESHOLD_SECONDS,
) -> QueueClass:
    """
    Decide the queue class for an envelope.

    Rules, first match wins:
    1. periodic_id present -> PERIODIC
    2. not_before in the future -> DELAYED
    3. attempt > 0 -> RETRY
    4. timeout above the long-running threshold -> LONG_RUNNING
    5. otherwise -> REGULAR
    """
    if envelope.periodic_id is not None:
        return QueueClass.PERIODIC
    if not envelope.is_due(now or utcnow()):
        return QueueClass.DELAYED
    if envelope.attempt > 0:
        return QueueClass.RETRY
    if envelope.timeout > long_running_threshold:
        return QueueClass.LONG_RUNNING
    return QueueClass.REGULAR


def release_target(
    envelope: JobEnvelope,
    long_running_threshold: float = LONG_RUNNING_THRESHOLD_SECONDS,
) -> QueueClass:
    """
    Queue class a delayed envelope is released into once not_before elapses.

    Retry successors are released into RETRY, plain delayed jobs into
    REGULAR or LONG_RUNNING.
    """
    if envelope.not_before is None:
        return route(envelope, long_running_threshold=long_running_threshold)
    return route(
        envelope,
        now=envelope.not_before,
        long_running_threshold=long_running_threshold,
    )


def queue_name(queue_class: QueueClass, prefix: str) -> str:
    """Physical queue name for a queue class."""
    return f"{prefix}:{queue_class.value}"
