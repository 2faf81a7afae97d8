"""Dependency injection container with singleton, scoped and transient lifetimes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
)

from semble_core.errors import CircularDependencyError, SembleError
from semble_core.events import (
    SERVICE_REGISTERED,
    SERVICE_RESOLVED,
    EventSystem,
    create_event,
)

logger = logging.getLogger("semble_core.container")

DEFAULT_SCOPE: str = "default"


class ServiceLifetime(str, Enum):
    """How long a resolved instance is reused."""

    SINGLETON = "singleton"
    TRANSIENT = "transient"
    SCOPED = "scoped"


@dataclass
class ServiceRegistration:
    """Factory and lifetime registered under a unique name."""

    name: str
    factory: Callable[..., Any]
    lifetime: ServiceLifetime = ServiceLifetime.TRANSIENT
    dependencies: Tuple[str, ...] = field(default_factory=tuple)


class ServiceContainer:
    """Name-keyed service registry.

    Dependencies are declared by name at registration time and passed to
    the factory positionally, in declaration order. Cycles are detected
    while resolving, not when registering.

    Usage:
        container = ServiceContainer()
        container.register_singleton("config", lambda: {"debug": False})
        container.register_transient("client", Client, ["config"])
        client = container.resolve("client")
    """

    def __init__(self, event_system: Optional[EventSystem] = None) -> None:
        self._services: Dict[str, ServiceRegistration] = {}
        self._singletons: Dict[str, Any] = {}
        self._scoped: Dict[str, Dict[str, Any]] = {}
        self._resolution_stack: List[str] = []
        self._event_system = event_system

    # Registration

    def register(
        self,
        name: str,
        factory: Callable[..., Any],
        lifetime: ServiceLifetime = ServiceLifetime.TRANSIENT,
        dependencies: Iterable[str] = (),
    ) -> None:
        """Register ``factory`` under ``name``.

        Raises:
            SembleError: If ``name`` is already registered.
        """
        if name in self._services:
            raise SembleError(
                f"Service '{name}' is already registered",
                "SERVICE_ALREADY_REGISTERED",
            )
        lifetime = ServiceLifetime(lifetime)
        self._services[name] = ServiceRegistration(
            name=name,
            factory=factory,
            lifetime=lifetime,
            dependencies=tuple(dependencies),
        )
        logger.debug("Registered service %s (%s)", name, lifetime.value)
        if self._event_system is not None:
            self._event_system.emit_nowait(
                create_event(
                    SERVICE_REGISTERED,
                    "ServiceContainer",
                    service_name=name,
                    lifetime=lifetime.value,
                )
            )

    def register_singleton(
        self, name: str, factory: Callable[..., Any], dependencies: Iterable[str] = ()
    ) -> None:
        self.register(name, factory, ServiceLifetime.SINGLETON, dependencies)

    def register_transient(
        self, name: str, factory: Callable[..., Any], dependencies: Iterable[str] = ()
    ) -> None:
        self.register(name, factory, ServiceLifetime.TRANSIENT, dependencies)

    def register_scoped(
        self, name: str, factory: Callable[..., Any], dependencies: Iterable[str] = ()
    ) -> None:
        self.register(name, factory, ServiceLifetime.SCOPED, dependencies)

    def register_batch(self, registrations: Iterable[Mapping[str, Any]]) -> None:
        """Register several services from mappings with ``name``, ``factory``
        and optional ``lifetime`` and ``dependencies`` keys."""
        for registration in registrations:
            self.register(
                registration["name"],
                registration["factory"],
                registration.get("lifetime") or ServiceLifetime.TRANSIENT,
                registration.get("dependencies") or (),
            )

    # Resolution

    def resolve(self, name: str, scope: Optional[str] = None) -> Any:
        """Build or fetch the instance registered under ``name``.

        Raises:
            CircularDependencyError: If ``name`` is already being resolved.
            SembleError: If ``name`` is not registered.
        """
        if name in self._resolution_stack:
            raise CircularDependencyError([*self._resolution_stack, name])

        registration = self._services.get(name)
        if registration is None:
            raise SembleError(
                f"Service '{name}' is not registered", "SERVICE_NOT_REGISTERED"
            )

        self._resolution_stack.append(name)
        try:
            if registration.lifetime == ServiceLifetime.SINGLETON:
                instance = self._resolve_singleton(registration)
            elif registration.lifetime == ServiceLifetime.SCOPED:
                instance = self._resolve_scoped(registration, scope or DEFAULT_SCOPE)
            else:
                instance = self._build(registration, scope)
        finally:
            self._resolution_stack.pop()

        if self._event_system is not None:
            self._event_system.emit_nowait(
                create_event(
                    SERVICE_RESOLVED,
                    "ServiceContainer",
                    service_name=name,
                    scope=scope,
                )
            )
        return instance

    def _resolve_singleton(self, registration: ServiceRegistration) -> Any:
        if registration.name not in self._singletons:
            self._singletons[registration.name] = self._build(registration, None)
        return self._singletons[registration.name]

    def _resolve_scoped(self, registration: ServiceRegistration, scope: str) -> Any:
        instances = self._scoped.setdefault(scope, {})
        if registration.name not in instances:
            instances[registration.name] = self._build(registration, scope)
        return instances[registration.name]

    def _build(self, registration: ServiceRegistration, scope: Optional[str]) -> Any:
        dependencies = [self.resolve(dep, scope) for dep in registration.dependencies]
        return registration.factory(*dependencies)

    # Introspection and lifecycle

    def is_registered(self, name: str) -> bool:
        return name in self._services

    def get_registered_services(self) -> List[str]:
        return list(self._services)

    def get_service_info(self, name: str) -> Optional[ServiceRegistration]:
        return self._services.get(name)

    def clear(self) -> None:
        """Drop every registration and cached instance."""
        self._services.clear()
        self._singletons.clear()
        self._scoped.clear()
        self._resolution_stack.clear()

    def clear_scope(self, scope: str) -> None:
        self._scoped.pop(scope, None)

    def create_scope(self, scope_name: str) -> "ScopedServiceContainer":
        return ScopedServiceContainer(self, scope_name)

    def __contains__(self, name: object) -> bool:
        return name in self._services


class ScopedServiceContainer:
    """Facade resolving into one named scope of a parent container.

    Registrations and singletons are shared with the parent. ``clear()``
    (or leaving the ``with`` block) only releases this scope's instances.
    """

    def __init__(self, parent: ServiceContainer, scope_name: str) -> None:
        self._parent = parent
        self.scope_name = scope_name

    def register(
        self,
        name: str,
        factory: Callable[..., Any],
        lifetime: ServiceLifetime = ServiceLifetime.TRANSIENT,
        dependencies: Iterable[str] = (),
    ) -> None:
        self._parent.register(name, factory, lifetime, dependencies)

    def resolve(self, name: str) -> Any:
        return self._parent.resolve(name, self.scope_name)

    def is_registered(self, name: str) -> bool:
        return self._parent.is_registered(name)

    def clear(self) -> None:
        self._parent.clear_scope(self.scope_name)

    def create_scope(self, scope_name: str) -> "ScopedServiceContainer":
        return self._parent.create_scope(scope_name)

    def __enter__(self) -> "ScopedServiceContainer":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.clear()


def injectable(
    container: ServiceContainer,
    cls: Callable[..., Any],
    dependencies: Sequence[str] = (),
) -> Callable[..., Any]:
    """Return a constructor that resolves ``dependencies`` first.

    ``injectable(container, Client, ["config"])(extra)`` builds
    ``Client(container.resolve("config"), extra)``.
    """

    def construct(*args: Any, **kwargs: Any) -> Any:
        resolved = [container.resolve(dep) for dep in dependencies]
        return cls(*resolved, *args, **kwargs)

    construct.__name__ = getattr(cls, "__name__", "construct")
    construct.__doc__ = getattr(cls, "__doc__", None)
    return construct
