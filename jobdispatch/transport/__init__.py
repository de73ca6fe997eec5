"""
Transport module.
Contains the broker abstraction and its in-memory and Redis implementations.
"""

from jobdispatch.config import Settings, get_settings
from jobdispatch.transport.base import Delivery, OutgoingMessage, Transport
from jobdispatch.transport.memory import InMemoryBroker, InMemoryTransport
from jobdispatch.transport.redis_transport import RedisTransport


def create_transport(settings: Settings | None = None) -> Transport:
    """
    Create a transport connection from configuration.

    Args:
        settings: Optional settings. Uses the cached settings if not provided.

    Returns:
        Transport: An unconnected transport.

    Raises:
        ValueError: If the backend is unknown or Redis is selected without a URL.
    """
    settings = settings or get_settings()
    backend = settings.transport_backend.lower()

    if backend == "memory":
        return InMemoryTransport(
            connect_retries=settings.transport_connect_retries,
            retry_backoff_seconds=settings.transport_retry_backoff_seconds,
        )
    if backend == "redis":
        if not settings.redis_url:
            raise ValueError("REDIS_URL must be set for the redis transport")
        return RedisTransport(
            redis_url=settings.redis_url,
            prefix=settings.redis_prefix,
            consumer_id=settings.worker_id,
            heartbeat_ttl_seconds=settings.consumer_heartbeat_ttl_seconds,
            promote_interval_seconds=settings.delayed_promote_interval_seconds,
            poll_interval_seconds=settings.transport_poll_interval_seconds,
            connect_retries=settings.transport_connect_retries,
            retry_backoff_seconds=settings.transport_retry_backoff_seconds,
        )
    raise ValueError(f"Unknown transport backend: {settings.transport_backend}")


__all__ = [
    "Transport",
    "Delivery",
    "OutgoingMessage",
    "InMemoryBroker",
    "InMemoryTransport",
    "RedisTransport",
    "create_transport",
]
