"""
Job handlers registry and built-in handlers.

A job type maps to a handler function and an optional pydantic model
describing its arguments. Handlers must be idempotent: delivery is
at-least-once, so a handler may run more than once for the same job.
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from jobdispatch.errors import SerializationError
from jobdispatch.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Handlers may be coroutine functions or plain functions
JobHandler = Callable[[JobContext], Awaitable[Any] | Any]


@dataclass(frozen=True)
class JobDefinition:
    """A registered job type."""

    job_type: str
    handler: JobHandler
    schema: type[BaseModel] | None = None
    timeout: float | None = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def encode_arguments(self, arguments: bytes | BaseModel | dict[str, Any] | None) -> bytes:
        """
        Serialize publish-time arguments.

        Raw bytes are passed through untouched. Dicts and models are
        validated against the schema when one is registered.
        """
        if arguments is None:
            arguments = {}
        if isinstance(arguments, bytes):
            return arguments
        if self.schema is not None:
            if not isinstance(arguments, self.schema):
                arguments = self.schema.model_validate(
                    arguments.model_dump() if isinstance(arguments, BaseModel) else arguments
                )
            return arguments.model_dump_json().encode("utf-8")
        if isinstance(arguments, BaseModel):
            return arguments.model_dump_json().encode("utf-8")
        return json.dumps(arguments).encode("utf-8")

    def decode_arguments(self, data: bytes) -> Any:
        """
        Parse stored arguments for the handler.

        Returns the schema instance, or the raw bytes when no schema is
        registered.

        Raises:
            SerializationError: If the bytes do not satisfy the schema.
        """
        if self.schema is None:
            return data
        try:
            return self.schema.model_validate_json(data or b"{}")
        except ValidationError as e:
            raise SerializationError(f"Invalid arguments for job type {self.job_type}: {e}") from e


class JobRegistry:
    """Maps job type identifiers to their definitions."""

    def __init__(self) -> None:
        self._definitions: dict[str, JobDefinition] = {}

    def register(
        self,
        job_type: str,
        handler: JobHandler,
        schema: type[BaseModel] | None = None,
        timeout: float | None = None,
    ) -> JobDefinition:
        definition = JobDefinition(job_type=job_type, handler=handler, schema=schema, timeout=timeout)
        self._definitions[job_type] = definition
        logger.info(f"Registered handler for job type: {job_type}")
        return definition

    def get(self, job_type: str) -> JobDefinition | None:
        return self._definitions.get(job_type)

    def job_types(self) -> list[str]:
        return list(self._definitions.keys())

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._definitions


# Default registry used by the decorator and the default job factory
_registry = JobRegistry()


def get_registry() -> JobRegistry:
    """Get the process-wide default registry."""
    return _registry


def register_handler(
    job_type: str,
    schema: type[BaseModel] | None = None,
    timeout: float | None = None,
    registry: JobRegistry | None = None,
) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        job_type: The job type this handler processes.
        schema: Optional pydantic model for the job's arguments.
        timeout: Default timeout for jobs of this type.
        registry: Registry to add to. Defaults to the process-wide one.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email", schema=SendEmailArgs)
        async def handle_send_email(context: JobContext) -> None:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        (registry or _registry).register(job_type, handler, schema=schema, timeout=timeout)
        return handler
    return decorator


def get_definition(job_type: str) -> JobDefinition | None:
    """Get the definition for a job type from the default registry."""
    return _registry.get(job_type)


def list_handlers() -> list[str]:
    """List all job types in the default registry."""
    return _registry.job_types()


# ============================================================================
# Built-in job handlers
# ============================================================================


class EchoArgs(BaseModel):
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class SleepArgs(BaseModel):
    duration_seconds: float = Field(default=1.0, ge=0)


@register_handler("echo", schema=EchoArgs)
async def handle_echo(context: JobContext) -> JobResult:
    """Return the arguments unchanged. Used for smoke testing a deployment."""
    logger.info(
        "Echo job executing",
        extra={"job_id": str(context.job_id), "attempt": context.attempt}
    )
    return JobResult(success=True, output={"echo": context.arguments.model_dump()})


@register_handler("sleep", schema=SleepArgs)
async def handle_sleep(context: JobContext) -> JobResult:
    """Sleep for `duration_seconds`. Used to exercise timeouts and long-running routing."""
    duration = context.arguments.duration_seconds
    logger.info(
        "Sleep job starting",
        extra={"job_id": str(context.job_id), "duration": duration}
    )
    await asyncio.sleep(duration)
    return JobResult(success=True, output={"slept_for": duration})


@register_handler("failing_job")
async def handle_failing_job(context: JobContext) -> JobResult:
    """Always fail. Used to exercise the retry path."""
    logger.info(
        "Failing job executing (will fail)",
        extra={"job_id": str(context.job_id), "attempt": context.attempt}
    )
    return JobResult(success=False, error=f"Intentional failure on attempt {context.attempt}")
