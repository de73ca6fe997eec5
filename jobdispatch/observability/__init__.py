"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobdispatch.observability.logging import get_logger, job_log_context, setup_logging
from jobdispatch.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobdispatch.observability.tracing import get_tracer, job_span, setup_tracing

__all__ = [
    "setup_logging",
    "get_logger",
    "job_log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "job_span",
]
