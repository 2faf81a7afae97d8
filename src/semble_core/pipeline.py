"""Priority-ordered async middleware pipeline.

Stages are ``async def stage(context, next_)`` callables. Each stage does
its work and awaits ``next_()`` to run the remainder of the chain; a stage
that never calls ``next_`` ends the chain early, and calling it a second
time does nothing. The driver threads an explicit index through a
recursive coroutine, so ``next_`` always means "run the stage after me".

Usage:
    pipeline = MiddlewarePipeline.create_with_defaults(event_system)
    context = create_context(execution, query, {}, "patient", "get")
    result = await pipeline.execute(context)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
)

from pydantic import BaseModel, ConfigDict, Field

from semble_core.errors import (
    PipelineTimeoutError,
    SembleError,
    SemblePermissionError,
    SembleValidationError,
    error_message,
    lookup,
)
from semble_core.events import (
    MIDDLEWARE_CLEARED,
    MIDDLEWARE_REGISTERED,
    MIDDLEWARE_TOGGLED,
    MIDDLEWARE_UNREGISTERED,
    PIPELINE_COMPLETED,
    PIPELINE_COMPLETED_WITH_ERRORS,
    PIPELINE_FAILED,
    PIPELINE_MIDDLEWARE_ERROR,
    PIPELINE_STARTED,
    EventSystem,
    create_event,
)

if TYPE_CHECKING:
    from semble_core.error_mapper import ErrorMapper

logger = logging.getLogger("semble_core.pipeline")

# ── Constants ────────────────────────────────────────────────────────────────

CREDENTIALS_NAME: str = "sembleApi"
DEFAULT_PRIORITY: int = 100
DEFAULT_TIMEOUT_MS: int = 30000
QUERY_PREVIEW_LENGTH: int = 100

_SOURCE = "MiddlewarePipeline"


class PipelineStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class PipelineOptions(BaseModel):
    """Per-execution settings. ``timeout_ms <= 0`` disables the deadline."""

    model_config = ConfigDict(frozen=True)

    continue_on_error: bool = Field(
        default=False, description="Record stage failures and keep going"
    )
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS)
    emit_events: bool = Field(default=True)


# ── Context ──────────────────────────────────────────────────────────────────


@dataclass
class PipelineRequest:
    query: str
    variables: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def resource(self) -> Any:
        return self.metadata.get("resource")

    @property
    def action(self) -> Any:
        return self.metadata.get("action")


@dataclass
class PipelineResponse:
    data: Any = None
    processed_data: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineContext:
    """State threaded through one execution.

    ``shared`` is the channel for passing data between stages. The same
    instance is handed to every stage and returned in the result.
    """

    execution: Any
    request: PipelineRequest
    response: Optional[PipelineResponse] = None
    shared: Dict[str, Any] = field(default_factory=dict)
    error: Optional[SembleError] = None


Next = Callable[[], Awaitable[None]]
Middleware = Callable[[PipelineContext, Next], Awaitable[None]]


@dataclass
class MiddlewareRegistration:
    name: str
    middleware: Middleware
    priority: int = DEFAULT_PRIORITY
    enabled: bool = True


@dataclass
class TraceEntry:
    """Timing and outcome of one started stage."""

    name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None


@dataclass
class PipelineResult:
    success: bool
    context: PipelineContext
    execution_time: float
    trace: List[TraceEntry] = field(default_factory=list)
    status: PipelineStatus = PipelineStatus.IDLE


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000


def _message_of(error: BaseException) -> str:
    return error_message(error) or str(error) or type(error).__name__


# ── Pipeline ─────────────────────────────────────────────────────────────────


class MiddlewarePipeline:
    """Ordered chain of middleware stages.

    Registrations are kept sorted by ascending priority. Ties run in
    registration order.
    """

    def __init__(self, event_system: Optional[EventSystem] = None) -> None:
        self._middlewares: List[MiddlewareRegistration] = []
        self._event_system = event_system
        self._running = 0
        self._last_status = PipelineStatus.IDLE

    @classmethod
    def create_with_defaults(
        cls, event_system: Optional[EventSystem] = None
    ) -> "MiddlewarePipeline":
        """Pipeline with the built-in request stages registered."""
        pipeline = cls(event_system)
        pipeline.register("request-validation", request_validation_middleware, 10)
        pipeline.register("permission-check", permission_check_middleware, 20)
        pipeline.register("api-execution", api_execution_middleware, 50)
        pipeline.register("response-processing", response_processing_middleware, 80)
        pipeline.register("error-mapping", error_mapping_middleware, 90)
        return pipeline

    # Registration

    def register(
        self,
        name: str,
        middleware: Middleware,
        priority: int = DEFAULT_PRIORITY,
        enabled: bool = True,
    ) -> None:
        """Add a stage.

        Raises:
            SembleError: If a stage named ``name`` is already registered.
        """
        if any(m.name == name for m in self._middlewares):
            raise SembleError(
                f"Middleware '{name}' is already registered", "MIDDLEWARE_DUPLICATE"
            )
        self._middlewares.append(
            MiddlewareRegistration(
                name=name, middleware=middleware, priority=priority, enabled=enabled
            )
        )
        self._middlewares.sort(key=lambda m: m.priority)
        logger.debug("Registered middleware %s (priority %d)", name, priority)
        self._notify(MIDDLEWARE_REGISTERED, name=name, priority=priority, enabled=enabled)

    def unregister(self, name: str) -> bool:
        for index, registration in enumerate(self._middlewares):
            if registration.name == name:
                del self._middlewares[index]
                self._notify(MIDDLEWARE_UNREGISTERED, name=name)
                return True
        return False

    def set_enabled(self, name: str, enabled: bool) -> bool:
        for registration in self._middlewares:
            if registration.name == name:
                registration.enabled = enabled
                self._notify(MIDDLEWARE_TOGGLED, name=name, enabled=enabled)
                return True
        return False

    def get_middlewares(self) -> List[MiddlewareRegistration]:
        return list(self._middlewares)

    def get_enabled_middlewares(self) -> List[MiddlewareRegistration]:
        return [m for m in self._middlewares if m.enabled]

    def clear(self) -> None:
        count = len(self._middlewares)
        self._middlewares = []
        self._notify(MIDDLEWARE_CLEARED, count=count)

    def _notify(self, event_type: str, **payload: Any) -> None:
        if self._event_system is not None:
            self._event_system.emit_nowait(create_event(event_type, _SOURCE, **payload))

    # Execution

    @property
    def status(self) -> PipelineStatus:
        """``RUNNING`` while any execution is in flight, else the status of
        the last finished execution (``IDLE`` before the first one)."""
        if self._running:
            return PipelineStatus.RUNNING
        return self._last_status

    async def execute(
        self,
        context: PipelineContext,
        options: Optional[PipelineOptions] = None,
    ) -> PipelineResult:
        """Run every enabled stage against ``context``.

        Stage failures never escape: an aborted run stores the error on
        ``context.error`` and returns ``success=False``.
        """
        self._running += 1
        try:
            result = await self._execute(context, options)
        finally:
            self._running -= 1
        self._last_status = result.status
        return result

    async def _execute(
        self,
        context: PipelineContext,
        options: Optional[PipelineOptions],
    ) -> PipelineResult:
        options = options or PipelineOptions()
        started = time.monotonic()
        stages = self.get_enabled_middlewares()
        trace: List[TraceEntry] = []
        emit = options.emit_events and self._event_system is not None
        request = context.request

        if emit:
            await self._emit(
                PIPELINE_STARTED,
                middleware_count=len(stages),
                resource=request.resource,
                action=request.action,
            )

        loop = asyncio.get_running_loop()
        expired = asyncio.Event()
        timer: Optional[asyncio.TimerHandle] = None
        if options.timeout_ms > 0:
            timer = loop.call_later(options.timeout_ms / 1000, expired.set)

        async def run(index: int) -> None:
            if index >= len(stages):
                return
            stage = stages[index]
            entry = TraceEntry(name=stage.name, start_time=_now())
            trace.append(entry)

            continued = False

            async def next_() -> None:
                nonlocal continued
                if continued:
                    return
                continued = True
                await run(index + 1)

            try:
                if expired.is_set():
                    raise PipelineTimeoutError(options.timeout_ms)
                result = stage.middleware(context, next_)
                if inspect.isawaitable(result):
                    await result
                entry.success = True
            except Exception as e:
                entry.success = False
                entry.error = _message_of(e)
                if not options.continue_on_error:
                    raise
                context.error = (
                    e if isinstance(e, SembleError)
                    else SembleError(entry.error, "MIDDLEWARE_ERROR", cause=e)
                )
                logger.warning(
                    "Middleware %s failed, continuing: %s", stage.name, entry.error
                )
                if emit:
                    await self._emit(
                        PIPELINE_MIDDLEWARE_ERROR,
                        middleware_name=stage.name,
                        error=entry.error,
                        continuing=True,
                    )
                if not continued:
                    await run(index + 1)
            finally:
                entry.end_time = _now()

        try:
            await run(0)
        except Exception as e:
            execution_time = _elapsed_ms(started)
            message = _message_of(e)
            logger.error("Pipeline failed after %.1fms: %s", execution_time, message)
            if emit:
                await self._emit(
                    PIPELINE_FAILED,
                    error=message,
                    execution_time=execution_time,
                    resource=request.resource,
                    action=request.action,
                )
            context.error = (
                e if isinstance(e, SembleError)
                else SembleError(message, "PIPELINE_ERROR", cause=e)
            )
            return PipelineResult(
                success=False,
                context=context,
                execution_time=execution_time,
                trace=trace,
                status=PipelineStatus.FAILED,
            )
        finally:
            if timer is not None:
                timer.cancel()

        execution_time = _elapsed_ms(started)
        success = context.error is None
        if emit:
            await self._emit(
                PIPELINE_COMPLETED if success else PIPELINE_COMPLETED_WITH_ERRORS,
                execution_time=execution_time,
                middleware_count=len(stages),
                successful_middleware=sum(1 for entry in trace if entry.success),
                resource=request.resource,
                action=request.action,
            )
        return PipelineResult(
            success=success,
            context=context,
            execution_time=execution_time,
            trace=trace,
            status=(
                PipelineStatus.COMPLETED if success
                else PipelineStatus.COMPLETED_WITH_ERRORS
            ),
        )

    async def _emit(self, event_type: str, **payload: Any) -> None:
        if self._event_system is not None:
            await self._event_system.emit(create_event(event_type, _SOURCE, **payload))


# ── Built-in stages ──────────────────────────────────────────────────────────


async def request_validation_middleware(context: PipelineContext, next_: Next) -> None:
    request = context.request
    if not request.query or not isinstance(request.query, str):
        raise SembleValidationError(
            "Query is required and must be a string", field="query"
        )
    if not request.resource:
        raise SembleValidationError("Resource is required in metadata", field="resource")
    if not request.action:
        raise SembleValidationError("Action is required in metadata", field="action")

    context.shared["request_validated"] = True
    context.shared["validation_time"] = _now()
    await next_()


async def permission_check_middleware(context: PipelineContext, next_: Next) -> None:
    """Require credentials carrying a token before going further."""
    try:
        credentials = context.execution.get_credentials(CREDENTIALS_NAME)
        if inspect.isawaitable(credentials):
            credentials = await credentials
        if not credentials or not lookup(credentials, "token"):
            raise SembleError("Invalid or missing credentials", "PERMISSION_ERROR")
    except Exception as e:
        raise SemblePermissionError(
            f"Permission check failed: {_message_of(e)}",
            CREDENTIALS_NAME,
            operation=context.request.action,
        ) from e

    context.shared["permission_checked"] = True
    context.shared["permission_check_time"] = _now()
    await next_()


async def api_execution_middleware(context: PipelineContext, next_: Next) -> None:
    """Placeholder execution: answers with a response shaped by the action."""
    request = context.request
    context.response = PipelineResponse(
        data={
            request.action: {
                "success": True,
                "timestamp": _now().isoformat(),
                "resource": request.resource,
            }
        },
        metadata=_response_metadata(context),
    )
    context.shared["api_executed"] = True
    context.shared["api_execution_time"] = _now()
    await next_()


def create_api_execution_middleware(
    executor: Callable[[str, Dict[str, Any]], Any],
    error_mapper: Optional["ErrorMapper"] = None,
) -> Middleware:
    """Build an execution stage backed by ``executor(query, variables)``.

    Upstream failures are normalized through ``error_mapper``.
    """
    if error_mapper is None:
        from semble_core.error_mapper import ErrorMapper

        error_mapper = ErrorMapper()
    mapper = error_mapper

    async def execution_middleware(context: PipelineContext, next_: Next) -> None:
        request = context.request
        try:
            data = executor(request.query, request.variables)
            if inspect.isawaitable(data):
                data = await data
        except Exception as e:
            mapped = mapper.map_error(
                e,
                {
                    "operation": request.action,
                    "resource": request.resource,
                    "metadata": dict(request.metadata),
                },
            )
            raise mapped from e

        context.response = PipelineResponse(
            data=data, metadata=_response_metadata(context)
        )
        context.shared["api_executed"] = True
        context.shared["api_execution_time"] = _now()
        await next_()

    return execution_middleware


def _response_metadata(context: PipelineContext) -> Dict[str, Any]:
    validated_at = context.shared.get("validation_time")
    elapsed = (_now() - validated_at).total_seconds() * 1000 if validated_at else 0.0
    return {
        "execution_time": elapsed,
        "query": context.request.query[:QUERY_PREVIEW_LENGTH] + "...",
    }


async def response_processing_middleware(context: PipelineContext, next_: Next) -> None:
    if context.response is None:
        raise SembleError("No response data to process", "PROCESSING_ERROR")

    data = context.response.data
    processed = dict(data) if isinstance(data, dict) else {"data": data}
    processed["processed"] = True
    processed["processing_time"] = _now().isoformat()
    context.response.processed_data = processed
    context.shared["response_processed"] = True
    context.shared["response_processing_time"] = _now()
    await next_()


def map_pipeline_error(error: BaseException) -> SembleError:
    """Rewrite an untyped error into a user-facing message."""
    if isinstance(error, SembleError):
        return error

    message = _message_of(error)
    lowered = message.lower()
    if "permission" in lowered or "unauthorized" in lowered:
        return SembleError(
            "You do not have permission to perform this action",
            "PERMISSION_ERROR",
            cause=error,
        )
    if "timeout" in lowered:
        return SembleError(
            "The request timed out. Please try again.", "TIMEOUT_ERROR", cause=error
        )
    if "network" in lowered or "connection" in lowered:
        return SembleError(
            "Network error occurred. Please check your connection.",
            "NETWORK_ERROR",
            cause=error,
        )
    return SembleError(f"An error occurred: {message}", "UNKNOWN_ERROR", cause=error)


async def error_mapping_middleware(context: PipelineContext, next_: Next) -> None:
    """Terminal stage: maps anything still propagating from later stages."""
    try:
        await next_()
    except Exception as e:
        context.shared["error_mapped"] = True
        context.shared["error_mapping_time"] = _now()
        raise map_pipeline_error(e) from e


# ── Helpers ──────────────────────────────────────────────────────────────────


def create_context(
    execution: Any,
    query: str,
    variables: Optional[Dict[str, Any]] = None,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    item_index: Optional[int] = None,
) -> PipelineContext:
    metadata: Dict[str, Any] = {"resource": resource, "action": action}
    if item_index is not None:
        metadata["item_index"] = item_index
    return PipelineContext(
        execution=execution,
        request=PipelineRequest(
            query=query, variables=dict(variables or {}), metadata=metadata
        ),
    )


async def execute_request(
    pipeline: MiddlewarePipeline,
    execution: Any,
    query: str,
    variables: Optional[Dict[str, Any]],
    resource: str,
    action: str,
    options: Optional[PipelineOptions] = None,
) -> PipelineResult:
    """Build a context and run it through ``pipeline``."""
    context = create_context(execution, query, variables, resource, action)
    return await pipeline.execute(context, options)
