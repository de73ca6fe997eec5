"""
Unit tests for queue routing.
"""

from datetime import datetime, timedelta, timezone

from jobdispatch.constants import QueueClass
from jobdispatch.routing import queue_name, release_target, route
from jobdispatch.types.envelope import JobEnvelope, Schedule

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestRoute:
    """Tests for the routing rules, first match wins."""

    def test_fresh_short_job_is_regular(self):
        envelope = JobEnvelope(job_type="echo", timeout=5)
        assert route(envelope, NOW) == QueueClass.REGULAR

    def test_long_timeout_is_long_running(self):
        envelope = JobEnvelope(job_type="echo", timeout=30)
        assert route(envelope, NOW) == QueueClass.LONG_RUNNING

    def test_timeout_at_threshold_stays_regular(self):
        envelope = JobEnvelope(job_type="echo", timeout=10)
        assert route(envelope, NOW, long_running_threshold=10) == QueueClass.REGULAR

    def test_retry_attempt_beats_long_running(self):
        envelope = JobEnvelope(job_type="echo", timeout=30, attempt=2)
        assert route(envelope, NOW) == QueueClass.RETRY

    def test_future_not_before_is_delayed(self):
        envelope = JobEnvelope(job_type="echo", not_before=NOW + timedelta(seconds=1))
        assert route(envelope, NOW) == QueueClass.DELAYED

    def test_retry_successor_is_delayed_until_due(self):
        envelope = JobEnvelope(job_type="echo").successor(15, "boom", now=NOW)
        assert route(envelope, NOW) == QueueClass.DELAYED
        assert route(envelope, NOW + timedelta(seconds=15)) == QueueClass.RETRY

    def test_elapsed_not_before_falls_through(self):
        envelope = JobEnvelope(job_type="echo", not_before=NOW - timedelta(seconds=1))
        assert route(envelope, NOW) == QueueClass.REGULAR

    def test_periodic_wins_over_everything(self):
        envelope = JobEnvelope(
            job_type="echo",
            timeout=60,
            attempt=3,
            not_before=NOW + timedelta(hours=1),
            periodic_id="nightly",
            schedule=Schedule.every(60),
        )
        assert route(envelope, NOW) == QueueClass.PERIODIC


class TestReleaseTarget:
    """Tests for where held envelopes are released."""

    def test_delayed_job_released_to_regular(self):
        envelope = JobEnvelope(job_type="echo", not_before=NOW + timedelta(minutes=5))
        assert release_target(envelope) == QueueClass.REGULAR

    def test_delayed_long_job_released_to_long_running(self):
        envelope = JobEnvelope(job_type="echo", timeout=60, not_before=NOW + timedelta(minutes=5))
        assert release_target(envelope) == QueueClass.LONG_RUNNING

    def test_retry_successor_released_to_retry(self):
        envelope = JobEnvelope(job_type="echo", timeout=60).successor(15, now=NOW)
        assert release_target(envelope) == QueueClass.RETRY


def test_queue_name_uses_prefix():
    assert queue_name(QueueClass.LONG_RUNNING, "jobs") == "jobs:long-running"
