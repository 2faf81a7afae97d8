"""
semble-core: Request-processing core for Semble integrations.

This library provides the pieces an integration layer is built from: a
typed error model, a publish/subscribe event system, a dependency-injection
container, a versioned schema registry, an async middleware pipeline and an
error mapper for upstream GraphQL/HTTP failures.

Example:
    >>> from semble_core import EventSystem, MiddlewarePipeline, create_context
    >>> events = EventSystem()
    >>> pipeline = MiddlewarePipeline.create_with_defaults(events)
    >>> [m.name for m in pipeline.get_middlewares()][:2]
    ['request-validation', 'permission-check']

Instances are never shared implicitly: build what you need, or use
``create_core_container()`` for a container with the defaults wired in.
"""

__version__ = "2.0.0"

# Error model
from semble_core.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    SembleError,
    SembleAPIError,
    SembleAuthError,
    SemblePermissionError,
    SembleValidationError,
    SembleConfigError,
    SembleNetworkError,
    CircularDependencyError,
    EventTimeoutError,
    PipelineTimeoutError,
    create_error,
    create_config_error,
    create_permission_error,
)

# Event system
from semble_core.events import (
    DEFAULT_HISTORY_SIZE,
    EVENT_PAYLOAD_MODELS,
    Event,
    EventSystem,
    ListenerRegistration,
    PerformanceMonitor,
    create_event,
    instrument,
    setup_event_logging,
)

# Service container
from semble_core.container import (
    ServiceLifetime,
    ServiceRegistration,
    ServiceContainer,
    ScopedServiceContainer,
    injectable,
)

# Schema registry
from semble_core.schema_registry import (
    VALID_ACTIONS,
    SchemaVersion,
    FieldValidationRule,
    FieldConditionalRule,
    FieldSchema,
    ResourceSchema,
    SchemaValidationResult,
    SchemaChangeImpact,
    SchemaRegistry,
    create_schema,
    register_common_schemas,
)

# Middleware pipeline
from semble_core.pipeline import (
    CREDENTIALS_NAME,
    DEFAULT_PRIORITY,
    DEFAULT_TIMEOUT_MS,
    PipelineStatus,
    PipelineOptions,
    PipelineRequest,
    PipelineResponse,
    PipelineContext,
    MiddlewareRegistration,
    TraceEntry,
    PipelineResult,
    MiddlewarePipeline,
    create_api_execution_middleware,
    create_context,
    execute_request,
    map_pipeline_error,
)

# Error mapper
from semble_core.error_mapper import (
    HTTP_ERROR_MESSAGES,
    ErrorMapperConfig,
    ErrorMapper,
)

# Builders
from semble_core.builders import create_core_container

__all__ = [
    "__version__",
    # Error model
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorContext",
    "SembleError",
    "SembleAPIError",
    "SembleAuthError",
    "SemblePermissionError",
    "SembleValidationError",
    "SembleConfigError",
    "SembleNetworkError",
    "CircularDependencyError",
    "EventTimeoutError",
    "PipelineTimeoutError",
    "create_error",
    "create_config_error",
    "create_permission_error",
    # Event system
    "DEFAULT_HISTORY_SIZE",
    "EVENT_PAYLOAD_MODELS",
    "Event",
    "EventSystem",
    "ListenerRegistration",
    "PerformanceMonitor",
    "create_event",
    "instrument",
    "setup_event_logging",
    # Service container
    "ServiceLifetime",
    "ServiceRegistration",
    "ServiceContainer",
    "ScopedServiceContainer",
    "injectable",
    # Schema registry
    "VALID_ACTIONS",
    "SchemaVersion",
    "FieldValidationRule",
    "FieldConditionalRule",
    "FieldSchema",
    "ResourceSchema",
    "SchemaValidationResult",
    "SchemaChangeImpact",
    "SchemaRegistry",
    "create_schema",
    "register_common_schemas",
    # Middleware pipeline
    "CREDENTIALS_NAME",
    "DEFAULT_PRIORITY",
    "DEFAULT_TIMEOUT_MS",
    "PipelineStatus",
    "PipelineOptions",
    "PipelineRequest",
    "PipelineResponse",
    "PipelineContext",
    "MiddlewareRegistration",
    "TraceEntry",
    "PipelineResult",
    "MiddlewarePipeline",
    "create_api_execution_middleware",
    "create_context",
    "execute_request",
    "map_pipeline_error",
    # Error mapper
    "HTTP_ERROR_MESSAGES",
    "ErrorMapperConfig",
    "ErrorMapper",
    # Builders
    "create_core_container",
]
