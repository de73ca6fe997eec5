"""
Distributed background-job dispatcher.

At-least-once job execution over a plain FIFO broker, with retry backoff,
delayed jobs, and periodic jobs that run once per occurrence across a
fleet of worker instances.
"""

__version__ = "1.0.0"
