"""Publish/subscribe event system for decoupled component communication.

Sections:
    1. Constants (event type strings, defaults)
    2. Event envelope and typed payload models
    3. Listener registrations
    4. EventSystem
    5. Helpers (instrument, logging hooks, performance monitor)
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Optional,
    Set,
    Type,
    TypeVar,
)

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID

from semble_core.errors import EventTimeoutError

logger = logging.getLogger("semble_core.events")

T = TypeVar("T")

# ── Section 1: Constants ─────────────────────────────────────────────────────

DEFAULT_HISTORY_SIZE: int = 1000

SERVICE_REGISTERED: str = "service.registered"
SERVICE_RESOLVED: str = "service.resolved"
CACHE_HIT: str = "cache.hit"
CACHE_MISS: str = "cache.miss"
CACHE_INVALIDATED: str = "cache.invalidated"
API_REQUEST: str = "api.request"
API_RESPONSE: str = "api.response"
API_ERROR: str = "api.error"
FIELD_DISCOVERED: str = "field.discovered"
FIELD_VALIDATED: str = "field.validated"
PERMISSION_CHECKED: str = "permission.checked"
SCHEMA_REGISTERED: str = "schema.registered"
SCHEMA_UPDATED: str = "schema.updated"
NODE_EXECUTED: str = "node.executed"
TRIGGER_POLLED: str = "trigger.polled"

MIDDLEWARE_REGISTERED: str = "middleware.registered"
MIDDLEWARE_UNREGISTERED: str = "middleware.unregistered"
MIDDLEWARE_TOGGLED: str = "middleware.toggled"
MIDDLEWARE_CLEARED: str = "middleware.cleared"
PIPELINE_STARTED: str = "pipeline.started"
PIPELINE_COMPLETED: str = "pipeline.completed"
PIPELINE_COMPLETED_WITH_ERRORS: str = "pipeline.completed_with_errors"
PIPELINE_FAILED: str = "pipeline.failed"
PIPELINE_MIDDLEWARE_ERROR: str = "pipeline.middleware_error"

# ── Section 2: Event envelope and typed payload models ───────────────────────


def _new_event_id() -> str:
    return str(ULID())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(BaseModel):
    """Immutable event envelope.

    ``type`` is the sole dispatch key. Type-specific payload fields are
    carried as extra attributes (``event.service_name``).
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    type: str = Field(..., min_length=1, description="Dot-namespaced event type")
    timestamp: datetime = Field(
        default_factory=_utcnow, description="Creation time (UTC)"
    )
    source: str = Field(default="unknown", description="Emitting component")
    id: str = Field(
        default_factory=_new_event_id, min_length=1, description="Unique event id"
    )

    @property
    def payload(self) -> Dict[str, Any]:
        """Type-specific fields, without the envelope."""
        return dict(self.model_extra or {})

    def __repr__(self) -> str:
        return f"Event(type={self.type}, source={self.source}, id={self.id[:8]}...)"


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class ServiceRegisteredPayload(_Payload):
    service_name: str = Field(..., min_length=1)
    lifetime: str = Field(..., min_length=1)


class ServiceResolvedPayload(_Payload):
    service_name: str = Field(..., min_length=1)
    scope: Optional[str] = None


class CacheHitPayload(_Payload):
    key: str
    ttl: float


class CacheMissPayload(_Payload):
    key: str


class CacheInvalidatedPayload(_Payload):
    key: str
    reason: str


class ApiRequestPayload(_Payload):
    endpoint: str
    method: str
    query: Optional[str] = None


class ApiResponsePayload(_Payload):
    endpoint: str
    status_code: int
    duration: float = Field(..., ge=0)


class ApiErrorPayload(_Payload):
    endpoint: str
    error: str
    status_code: Optional[int] = None


class FieldDiscoveredPayload(_Payload):
    resource_type: str
    field_count: int = Field(..., ge=0)


class FieldValidatedPayload(_Payload):
    field_name: str
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


class PermissionCheckedPayload(_Payload):
    resource_type: str
    operation: str
    has_permission: bool


class SchemaRegisteredPayload(_Payload):
    schema_name: str
    version: str


class SchemaUpdatedPayload(_Payload):
    schema_name: str
    old_version: str
    new_version: str


class NodeExecutedPayload(_Payload):
    node_type: str
    operation: str
    duration: float = Field(..., ge=0)
    success: bool


class TriggerPolledPayload(_Payload):
    resource_type: str
    items_found: int = Field(..., ge=0)
    duration: float = Field(..., ge=0)


# Event type to payload model mapping. Unknown types carry free-form payloads.
EVENT_PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    SERVICE_REGISTERED: ServiceRegisteredPayload,
    SERVICE_RESOLVED: ServiceResolvedPayload,
    CACHE_HIT: CacheHitPayload,
    CACHE_MISS: CacheMissPayload,
    CACHE_INVALIDATED: CacheInvalidatedPayload,
    API_REQUEST: ApiRequestPayload,
    API_RESPONSE: ApiResponsePayload,
    API_ERROR: ApiErrorPayload,
    FIELD_DISCOVERED: FieldDiscoveredPayload,
    FIELD_VALIDATED: FieldValidatedPayload,
    PERMISSION_CHECKED: PermissionCheckedPayload,
    SCHEMA_REGISTERED: SchemaRegisteredPayload,
    SCHEMA_UPDATED: SchemaUpdatedPayload,
    NODE_EXECUTED: NodeExecutedPayload,
    TRIGGER_POLLED: TriggerPolledPayload,
}


def create_event(event_type: str, source: str = "unknown", **payload: Any) -> Event:
    """Build an event, validating the payload when the type is known.

    Raises:
        pydantic.ValidationError: If the payload does not match the model
            registered for ``event_type``.
    """
    model = EVENT_PAYLOAD_MODELS.get(event_type)
    if model is not None:
        payload = model.model_validate(payload).model_dump()
    return Event(type=event_type, source=source, **payload)


# ── Section 3: Listener registrations ────────────────────────────────────────

Listener = Callable[[Event], Optional[Awaitable[None]]]


@dataclass
class ListenerRegistration:
    """A listener attached to one event type."""

    id: str
    type: str
    listener: Listener
    once: bool = False
    priority: int = 0
    source: Optional[str] = None

    def accepts(self, event: Event) -> bool:
        return self.source is None or self.source == event.source


# ── Section 4: EventSystem ───────────────────────────────────────────────────


class EventSystem:
    """Priority-ordered publish/subscribe hub with a bounded history."""

    def __init__(self, max_history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self._listeners: Dict[str, List[ListenerRegistration]] = {}
        self._history: Deque[Event] = deque(maxlen=max_history_size)
        self._ids = itertools.count(1)
        self._pending: Set[asyncio.Task[None]] = set()

    @property
    def max_history_size(self) -> Optional[int]:
        return self._history.maxlen

    # Registration

    def on(
        self,
        event_type: str,
        listener: Listener,
        *,
        priority: int = 0,
        source: Optional[str] = None,
    ) -> str:
        """Register ``listener`` and return its id."""
        return self._add(event_type, listener, False, priority, source)

    def once(
        self,
        event_type: str,
        listener: Listener,
        *,
        priority: int = 0,
        source: Optional[str] = None,
    ) -> str:
        """Register a listener removed after its first delivery."""
        return self._add(event_type, listener, True, priority, source)

    def off(self, event_type: str, listener_id: str) -> bool:
        """Remove a listener. Returns False when nothing was removed."""
        registrations = self._listeners.get(event_type)
        if not registrations:
            return False
        for index, registration in enumerate(registrations):
            if registration.id == listener_id:
                del registrations[index]
                if not registrations:
                    del self._listeners[event_type]
                return True
        return False

    def remove_all_listeners(self, event_type: str) -> None:
        self._listeners.pop(event_type, None)

    def get_listeners(self, event_type: str) -> List[ListenerRegistration]:
        return list(self._listeners.get(event_type, ()))

    def get_event_types(self) -> List[str]:
        return list(self._listeners)

    def get_listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, ()))

    def clear(self) -> None:
        """Drop all listeners and the history."""
        self._listeners.clear()
        self._history.clear()

    # Dispatch

    async def emit(self, event: Event) -> None:
        """Deliver ``event`` to its listeners.

        Synchronous listeners run inline in priority order. Awaitables they
        return are joined at the end; a failing or slow listener never
        prevents the others from running.
        """
        pending = self._dispatch(event)
        if pending:
            await self._settle(event, pending)

    def emit_nowait(self, event: Event) -> None:
        """Deliver ``event`` from synchronous code.

        Synchronous listeners have run when this returns. Awaitables are
        scheduled on the running loop, or settled on a private loop when
        called outside one.
        """
        pending = self._dispatch(event)
        if not pending:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._settle(event, pending))
            return
        task = loop.create_task(self._settle(event, pending))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def get_history(
        self, event_type: Optional[str] = None, limit: Optional[int] = None
    ) -> List[Event]:
        """Return past events, oldest first, optionally filtered and limited
        to the ``limit`` most recent."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        if limit:
            events = events[-limit:]
        return events

    def wait_for(
        self,
        event_type: str,
        timeout_ms: Optional[float] = None,
        predicate: Optional[Callable[[Event], bool]] = None,
    ) -> "asyncio.Future[Event]":
        """Return a future resolved by the first matching event.

        The listener is registered before this returns, so events emitted
        right after the call are seen. Must be called from a running loop.

        Raises (through the future):
            EventTimeoutError: If ``timeout_ms`` elapses first.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Event] = loop.create_future()
        timer: Optional[asyncio.TimerHandle] = None
        listener_id = ""

        def cleanup() -> None:
            if timer is not None:
                timer.cancel()
            self.off(event_type, listener_id)

        def listener(event: Event) -> None:
            if future.done():
                return
            if predicate is not None and not predicate(event):
                return
            cleanup()
            future.set_result(event)

        def expire() -> None:
            if future.done():
                return
            cleanup()
            future.set_exception(EventTimeoutError(event_type, timeout_ms or 0))

        listener_id = self.on(event_type, listener)
        if timeout_ms:
            timer = loop.call_later(timeout_ms / 1000, expire)
        future.add_done_callback(lambda _: cleanup())
        return future

    # Internals

    def _add(
        self,
        event_type: str,
        listener: Listener,
        once: bool,
        priority: int,
        source: Optional[str],
    ) -> str:
        registration = ListenerRegistration(
            id=f"listener_{next(self._ids)}_{ULID()}",
            type=event_type,
            listener=listener,
            once=once,
            priority=priority,
            source=source,
        )
        self._listeners.setdefault(event_type, []).append(registration)
        return registration.id

    def _dispatch(self, event: Event) -> List[Awaitable[Any]]:
        self._history.append(event)
        registrations = [
            r for r in self._listeners.get(event.type, ()) if r.accepts(event)
        ]
        # sorted() is stable: equal priorities keep registration order.
        registrations.sort(key=lambda r: r.priority, reverse=True)

        pending: List[Awaitable[Any]] = []
        for registration in registrations:
            if registration.once:
                self.off(event.type, registration.id)
            try:
                result = registration.listener(event)
            except Exception:
                logger.exception(
                    "Event listener %s failed for %s", registration.id, event.type
                )
                continue
            if inspect.isawaitable(result):
                pending.append(result)
        return pending

    async def _settle(self, event: Event, pending: List[Awaitable[Any]]) -> None:
        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error(
                    "Async event listener failed for %s: %r",
                    event.type,
                    result,
                    exc_info=result,
                )


# ── Section 5: Helpers ───────────────────────────────────────────────────────


def instrument(
    event_system: EventSystem,
    func: Callable[..., Awaitable[T]],
    *,
    operation: Optional[str] = None,
    node_type: str = "unknown",
    source: str = "instrument",
) -> Callable[..., Awaitable[T]]:
    """Wrap an async callable so each call emits ``node.executed``.

    The event carries the call duration (ms) and whether it succeeded.
    Exceptions are re-raised after the event is emitted.
    """
    name = operation or getattr(func, "__name__", "call")

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        started = time.perf_counter()
        success = True
        try:
            return await func(*args, **kwargs)
        except BaseException:
            success = False
            raise
        finally:
            await event_system.emit(
                create_event(
                    NODE_EXECUTED,
                    source,
                    node_type=node_type,
                    operation=name,
                    duration=(time.perf_counter() - started) * 1000,
                    success=success,
                )
            )

    return wrapper


def setup_event_logging(
    event_system: EventSystem, log: Optional[logging.Logger] = None
) -> List[str]:
    """Log API, cache and service events. Returns the listener ids."""
    log = log or logger

    def on_request(event: Event) -> None:
        log.info("[API] %s %s", event.payload.get("method"), event.payload.get("endpoint"))

    def on_error(event: Event) -> None:
        log.error("[API Error] %s: %s", event.payload.get("endpoint"), event.payload.get("error"))

    def on_cache_hit(event: Event) -> None:
        log.debug("[Cache Hit] %s", event.payload.get("key"))

    def on_resolved(event: Event) -> None:
        log.debug("[Service] Resolved %s", event.payload.get("service_name"))

    return [
        event_system.on(API_REQUEST, on_request),
        event_system.on(API_ERROR, on_error),
        event_system.on(CACHE_HIT, on_cache_hit),
        event_system.on(SERVICE_RESOLVED, on_resolved),
    ]


class PerformanceMonitor:
    """Collect durations from ``api.response`` and ``node.executed`` events."""

    def __init__(self, event_system: EventSystem) -> None:
        self._durations: Dict[str, List[float]] = {}
        self._listener_ids = [
            event_system.on(API_RESPONSE, self._on_api_response),
            event_system.on(NODE_EXECUTED, self._on_node_executed),
        ]
        self._event_system = event_system

    def _record(self, key: str, duration: float) -> None:
        self._durations.setdefault(key, []).append(duration)

    def _on_api_response(self, event: Event) -> None:
        self._record(f"api.{event.payload['endpoint']}", event.payload["duration"])

    def _on_node_executed(self, event: Event) -> None:
        payload = event.payload
        self._record(
            f"node.{payload['node_type']}.{payload['operation']}", payload["duration"]
        )

    def get_metrics(self) -> Dict[str, Dict[str, float]]:
        return {
            key: {
                "count": len(values),
                "avg": sum(values) / len(values),
                "min": min(values),
                "max": max(values),
            }
            for key, values in self._durations.items()
        }

    def detach(self) -> None:
        self._event_system.off(API_RESPONSE, self._listener_ids[0])
        self._event_system.off(NODE_EXECUTED, self._listener_ids[1])
