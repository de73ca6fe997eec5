"""
Job publishing routes.
"""

import logging

from fastapi import APIRouter, HTTPException, status
from pydantic import ValidationError

from jobdispatch.api.dependencies import DispatcherDep
from jobdispatch.constants import API_V1_PREFIX
from jobdispatch.errors import TransportUnavailable
from jobdispatch.types.api import ErrorResponse, PublishJobRequest, PublishJobResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=PublishJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Publish a job",
    description="Publish a job for background execution. Execution outcome is not reported back.",
)
async def publish_job(
    request: PublishJobRequest,
    dispatcher: DispatcherDep,
) -> PublishJobResponse:
    """
    Publish a job.

    Args:
        request: Job type, arguments and optional delay/timeout.
        dispatcher: Application dispatcher.

    Returns:
        The id and release time of the published job.
    """
    try:
        envelope = await dispatcher.publish(
            request.job_type,
            request.arguments,
            delay=request.delay_seconds,
            timeout=request.timeout,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid arguments for job type {request.job_type}: {e.error_count()} errors",
        ) from e
    except TransportUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    logger.info(
        "Job published via API",
        extra={"job_id": str(envelope.id), "job_type": envelope.job_type},
    )
    return PublishJobResponse(id=envelope.id, job_type=envelope.job_type, not_before=envelope.not_before)
