"""
Periodic scheduler module.
"""

from jobdispatch.scheduler.main import PeriodicRegistration, PeriodicScheduler, as_schedule

__all__ = ["PeriodicScheduler", "PeriodicRegistration", "as_schedule"]
