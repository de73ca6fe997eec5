"""
Health check routes.
"""

from fastapi import APIRouter
from fastapi.responses import Response

from jobdispatch import __version__
from jobdispatch.api.dependencies import DispatcherDep
from jobdispatch.errors import TransportUnavailable
from jobdispatch.observability.metrics import get_metrics
from jobdispatch.types.api import HealthResponse
from jobdispatch.types.envelope import utcnow

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check broker connectivity and report queue depths.",
)
async def health_check(dispatcher: DispatcherDep) -> HealthResponse:
    """
    Perform a health check.

    Pings the broker and, when it is reachable, reports the number of
    waiting messages per queue class.

    Args:
        dispatcher: Application dispatcher.

    Returns:
        HealthResponse with service status.
    """
    transport_status = "healthy"
    depths: dict[str, int] = {}
    if await dispatcher.transport.ping():
        try:
            depths = await dispatcher.queue_depths()
        except TransportUnavailable:
            transport_status = "unhealthy"
    else:
        transport_status = "unhealthy"

    return HealthResponse(
        status="healthy" if transport_status == "healthy" else "degraded",
        version=__version__,
        transport=transport_status,
        queue_depths=depths,
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(dispatcher: DispatcherDep) -> dict:
    """
    Kubernetes readiness probe endpoint.

    Returns:
        Ready status.
    """
    return {"ready": await dispatcher.transport.ping()}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """
    Kubernetes liveness probe endpoint.

    Returns:
        Alive status.
    """
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
