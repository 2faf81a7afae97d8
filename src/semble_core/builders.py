"""Convenience wiring of the core components."""

from __future__ import annotations

from typing import Optional

from semble_core.container import ServiceContainer
from semble_core.error_mapper import ErrorMapper
from semble_core.events import EventSystem
from semble_core.pipeline import MiddlewarePipeline
from semble_core.schema_registry import SchemaRegistry

EVENT_SYSTEM: str = "event_system"
ERROR_MAPPER: str = "error_mapper"
SCHEMA_REGISTRY: str = "schema_registry"
PIPELINE: str = "pipeline"


def create_core_container(
    event_system: Optional[EventSystem] = None,
) -> ServiceContainer:
    """Return a fresh container holding the core services.

    ``event_system``, ``error_mapper`` and ``schema_registry`` are
    singletons; every ``pipeline`` resolution builds a new pipeline with
    the built-in stages, wired to the shared event system.
    """
    events = event_system or EventSystem()
    container = ServiceContainer()
    container.register_singleton(EVENT_SYSTEM, lambda: events)
    container.register_singleton(ERROR_MAPPER, ErrorMapper)
    container.register_singleton(SCHEMA_REGISTRY, SchemaRegistry, [EVENT_SYSTEM])
    container.register_transient(
        PIPELINE, MiddlewarePipeline.create_with_defaults, [EVENT_SYSTEM]
    )
    return container
