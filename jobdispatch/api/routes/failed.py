"""
Failed queue routes.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, status

from jobdispatch.api.dependencies import DispatcherDep
from jobdispatch.constants import API_V1_PREFIX, QueueClass
from jobdispatch.errors import TransportUnavailable
from jobdispatch.publisher import FailedMessage
from jobdispatch.types.api import (
    ErrorResponse,
    FailedJobListResponse,
    FailedJobResponse,
    RepublishRequest,
    RepublishResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/failed", tags=["Failed jobs"])


def _failed_to_response(message: FailedMessage) -> FailedJobResponse:
    """Convert a FailedMessage to a FailedJobResponse."""
    envelope = message.envelope
    return FailedJobResponse(
        job_id=envelope.id if envelope else None,
        job_type=envelope.job_type if envelope else None,
        attempt=envelope.attempt if envelope else None,
        reason=message.reason,
        error=message.error,
        source_queue=message.source_queue,
        enqueued_at=envelope.enqueued_at if envelope else None,
    )


@router.get(
    "",
    response_model=FailedJobListResponse,
    responses={503: {"model": ErrorResponse}},
    summary="List failed jobs",
    description="List the oldest messages in the failed queue without removing them.",
)
async def list_failed(
    dispatcher: DispatcherDep,
    limit: int = Query(default=50, ge=1, le=1000),
) -> FailedJobListResponse:
    try:
        messages = await dispatcher.publisher.peek_failed(limit)
        total = await dispatcher.transport.queue_length(dispatcher.publisher.queue_for(QueueClass.FAILED))
    except TransportUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    return FailedJobListResponse(jobs=[_failed_to_response(m) for m in messages], total=total)


@router.post(
    "/republish",
    response_model=RepublishResponse,
    responses={503: {"model": ErrorResponse}},
    summary="Republish failed jobs",
    description="Move failed jobs back into circulation as fresh first attempts.",
)
async def republish_failed(
    request: RepublishRequest,
    dispatcher: DispatcherDep,
) -> RepublishResponse:
    """
    Republish the oldest failed jobs.

    Each job keeps its id, restarts at attempt 0 and is routed like a new
    publish. Messages that cannot be decoded stay in the failed queue.
    """
    try:
        republished = await dispatcher.publisher.republish_failed(request.limit)
    except TransportUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    logger.info("Failed jobs republished via API", extra={"count": len(republished)})
    return RepublishResponse(
        republished=[envelope.id for envelope in republished],
        count=len(republished),
    )
