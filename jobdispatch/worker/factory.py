"""
Job factory and execution scopes.

The worker pool never resolves job implementations itself: it asks a
JobFactory for an executable job, passing the ExecutionScope of the
current batch. A scope is opened before a batch executes and closed after
it, so resources created through it are shared across the batch.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from typing import Any, Protocol

from jobdispatch.errors import ExecutionFailure, UnknownJobType
from jobdispatch.types.job import JobContext, JobResult
from jobdispatch.worker.handlers import JobDefinition, JobRegistry, get_registry

logger = logging.getLogger(__name__)


class ExecutionScope:
    """
    Resource lifetime handle for one execution batch.

    Resources are created lazily on first request and closed in reverse
    order when the scope closes. Objects exposing `aclose()` or `close()`
    are closed automatically.
    """

    def __init__(self, name: str = "batch"):
        self.name = name
        self._resources: dict[str, Any] = {}
        self._stack = AsyncExitStack()
        self._closed = False

    async def resource(self, key: str, factory: Callable[[], Any | Awaitable[Any]]) -> Any:
        """Get or create the resource registered under `key`."""
        if self._closed:
            raise RuntimeError(f"Execution scope {self.name} is closed")
        if key not in self._resources:
            value = factory()
            if inspect.isawaitable(value):
                value = await value
            if hasattr(value, "aclose"):
                self._stack.push_async_callback(value.aclose)
            elif hasattr(value, "close"):
                self._stack.callback(value.close)
            self._resources[key] = value
        return self._resources[key]

    def __contains__(self, key: object) -> bool:
        return key in self._resources

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._resources.clear()
        await self._stack.aclose()

    async def __aenter__(self) -> "ExecutionScope":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class ExecutableJob(Protocol):
    """An executable job instance produced by a factory."""

    async def execute(self, arguments: bytes, context: JobContext) -> Any: ...


class JobFactory(Protocol):
    """Produces executable jobs from job type identifiers."""

    def create(self, job_type: str, scope: ExecutionScope) -> ExecutableJob: ...


class HandlerJob:
    """Executable job backed by a registered handler function."""

    def __init__(self, definition: JobDefinition, scope: ExecutionScope):
        self.definition = definition
        self.scope = scope

    async def execute(self, arguments: bytes, context: JobContext) -> Any:
        """
        Decode arguments and run the handler.

        Synchronous handlers run in a worker thread.

        Raises:
            SerializationError: If the arguments do not match the schema.
            ExecutionFailure: If the handler returns an unsuccessful JobResult.
        """
        context.arguments = self.definition.decode_arguments(arguments)
        context.scope = self.scope

        if self.definition.is_async:
            result = await self.definition.handler(context)
        else:
            result = await asyncio.to_thread(self.definition.handler, context)

        if isinstance(result, JobResult) and not result.success:
            raise ExecutionFailure(
                result.error or "Job reported failure",
                job_id=context.job_id,
                job_type=context.job_type,
                attempt=context.attempt,
            )
        return result


class RegistryJobFactory:
    """JobFactory resolving job types through a JobRegistry."""

    def __init__(self, registry: JobRegistry | None = None):
        self.registry = registry or get_registry()

    def create(self, job_type: str, scope: ExecutionScope) -> HandlerJob:
        """
        Raises:
            UnknownJobType: If no handler is registered for `job_type`.
        """
        definition = self.registry.get(job_type)
        if definition is None:
            logger.error(f"No handler for job type: {job_type}")
            raise UnknownJobType(
                f"No handler registered for job type: {job_type}",
                job_type=job_type,
            )
        return HandlerJob(definition, scope)
