"""Error hierarchy for the Semble integration core.

Every failure raised by the library is a ``SembleError``. Subclasses add the
fields needed to describe one category of failure (HTTP status, missing
permission, rejected field, ...). Instances are immutable once constructed;
the only way to change an error is to wrap it in a new one.

``create_error`` classifies arbitrary error-like objects (exceptions or
mappings received from upstream clients) into the closest subclass.
"""

from __future__ import annotations

import traceback
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypedDict,
)

# ── Section 1: Categories and severities ────────────────────────────────────


class ErrorCategory(str, Enum):
    """Broad classification used for handling decisions."""

    API = "api"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Severity levels. Only used to pick a log level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorContext(TypedDict, total=False):
    """Known context keys. Any other key is accepted as well."""

    operation: str
    resource: str
    user_id: str
    request_id: str
    metadata: Mapping[str, Any]


RATE_LIMIT_EXCEEDED: str = "RATE_LIMIT_EXCEEDED"
UNKNOWN_ERROR: str = "UNKNOWN_ERROR"
UNKNOWN_ERROR_MESSAGE: str = "Unknown error occurred"

NETWORK_ERROR_CODES = frozenset({"ECONNREFUSED", "ENOTFOUND", "TIMEOUT"})

# Keys of the placeholder written over fields the caller may not read.
MISSING_PERMISSION_KEY: str = "__MISSING_PERMISSION__"
FIELD_NAME_KEY: str = "__FIELD_NAME__"
ERROR_MESSAGE_KEY: str = "__ERROR_MESSAGE__"

# ── Section 2: Base error ───────────────────────────────────────────────────


class SembleError(Exception):
    """Base exception for all library errors."""

    def __init__(
        self,
        message: str,
        code: str = "SEMBLE_ERROR",
        context: Optional[Mapping[str, Any]] = None,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self._message = message
        self._code = code
        self._context = MappingProxyType(dict(context or {}))
        self._category = ErrorCategory(category)
        self._severity = ErrorSeverity(severity)
        self._timestamp = datetime.now(timezone.utc)
        if cause is not None:
            self.__cause__ = cause

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def message(self) -> str:
        return self._message

    @property
    def code(self) -> str:
        return self._code

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def category(self) -> ErrorCategory:
        return self._category

    @property
    def severity(self) -> ErrorSeverity:
        return self._severity

    @property
    def timestamp(self) -> datetime:
        return self._timestamp

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__

    def to_dict(self) -> Dict[str, Any]:
        """Flat serialization for structured logging.

        Subclass fields (status code, field, required permission, ...) are
        not part of the output.
        """
        stack: Optional[str] = None
        if self.__traceback__ is not None:
            stack = "".join(
                traceback.format_exception(type(self), self, self.__traceback__)
            )
        return {
            "name": self.name,
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "severity": self.severity.value,
            "context": dict(self.context),
            "timestamp": self.timestamp.isoformat(),
            "stack": stack,
        }

    def get_user_message(self) -> str:
        return self.message

    def is_retryable(self) -> bool:
        """Advisory flag for callers running their own retry loop."""
        if self.category == ErrorCategory.NETWORK or self.code == RATE_LIMIT_EXCEEDED:
            return True
        return False

    def __repr__(self) -> str:
        return (
            f"{self.name}(code={self.code}, "
            f"category={self.category.value}, "
            f"message={self.message[:40]!r})"
        )


# ── Section 3: Typed subclasses ─────────────────────────────────────────────


class SembleAPIError(SembleError):
    """Error returned by the Semble API (HTTP or GraphQL level)."""

    def __init__(
        self,
        message: str,
        code: str = "API_ERROR",
        status_code: Optional[int] = None,
        context: Optional[Mapping[str, Any]] = None,
        response: Any = None,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            code,
            context,
            ErrorCategory.API,
            self._severity_from_status(status_code),
            cause=cause,
        )
        self._status_code = status_code
        self._response = response

    @property
    def status_code(self) -> Optional[int]:
        return self._status_code

    @property
    def response(self) -> Any:
        return self._response

    @staticmethod
    def _severity_from_status(status_code: Optional[int]) -> ErrorSeverity:
        if not status_code:
            return ErrorSeverity.MEDIUM
        if status_code >= 500:
            return ErrorSeverity.HIGH
        if status_code == 429:
            return ErrorSeverity.MEDIUM
        if status_code >= 400:
            return ErrorSeverity.LOW
        return ErrorSeverity.MEDIUM

    def is_retryable(self) -> bool:
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class SembleAuthError(SembleError):
    """Invalid, expired or missing credentials."""

    def __init__(
        self,
        message: str,
        code: str = "AUTH_ERROR",
        credential: str = "unknown",
        hint: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            code,
            context,
            ErrorCategory.AUTHENTICATION,
            ErrorSeverity.HIGH,
            cause=cause,
        )
        self._credential = credential
        self._hint = hint

    @property
    def credential(self) -> str:
        return self._credential

    @property
    def hint(self) -> Optional[str]:
        return self._hint

    def get_user_message(self) -> str:
        if self.hint:
            return f"{self.message} {self.hint}"
        return self.message

    def is_retryable(self) -> bool:
        return False


class SemblePermissionError(SembleError):
    """The credentials lack a permission, possibly for a single field."""

    def __init__(
        self,
        message: str,
        required_permission: str,
        field: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            "PERMISSION_DENIED",
            context,
            ErrorCategory.PERMISSION,
            ErrorSeverity.MEDIUM,
            cause=cause,
        )
        self._required_permission = required_permission
        self._field = field
        self._operation = operation

    @property
    def required_permission(self) -> str:
        return self._required_permission

    @property
    def field(self) -> Optional[str]:
        return self._field

    @property
    def operation(self) -> Optional[str]:
        return self._operation

    def get_user_message(self) -> str:
        return permission_message(
            self.required_permission, self.field, self.operation
        )

    def is_retryable(self) -> bool:
        return False

    @staticmethod
    def create_field_placeholder(field: str, permission: str) -> Dict[str, str]:
        """Value written in place of a field the caller may not read."""
        return {
            MISSING_PERMISSION_KEY: permission,
            FIELD_NAME_KEY: field,
            ERROR_MESSAGE_KEY: (
                f"Access denied for field '{field}' - "
                f"missing permission '{permission}'"
            ),
        }


class SembleValidationError(SembleError):
    """Input rejected by a validation rule."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        constraints: Optional[Sequence[str]] = None,
        context: Optional[Mapping[str, Any]] = None,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            "VALIDATION_ERROR",
            context,
            ErrorCategory.VALIDATION,
            ErrorSeverity.LOW,
            cause=cause,
        )
        self._field = field
        self._value = value
        self._constraints: Tuple[str, ...] = tuple(constraints or ())

    @property
    def field(self) -> Optional[str]:
        return self._field

    @property
    def value(self) -> Any:
        return self._value

    @property
    def constraints(self) -> Tuple[str, ...]:
        return self._constraints

    def get_user_message(self) -> str:
        if self.field and self.constraints:
            return (
                f"Validation failed for '{self.field}': "
                f"{', '.join(self.constraints)}"
            )
        return self.message

    def is_retryable(self) -> bool:
        return False


class SembleConfigError(SembleError):
    """Missing or invalid configuration value."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        actual_value: Any = None,
        context: Optional[Mapping[str, Any]] = None,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            "CONFIG_ERROR",
            context,
            ErrorCategory.CONFIGURATION,
            ErrorSeverity.HIGH,
            cause=cause,
        )
        self._config_key = config_key
        self._expected_type = expected_type
        self._actual_value = actual_value

    @property
    def config_key(self) -> Optional[str]:
        return self._config_key

    @property
    def expected_type(self) -> Optional[str]:
        return self._expected_type

    @property
    def actual_value(self) -> Any:
        return self._actual_value

    def get_user_message(self) -> str:
        if self.config_key:
            return f"Configuration error for '{self.config_key}': {self.message}"
        return self.message

    def is_retryable(self) -> bool:
        return False


class SembleNetworkError(SembleError):
    """Connection refused, DNS failure or transport timeout."""

    def __init__(
        self,
        message: str,
        code: str = "NETWORK_ERROR",
        original_error: Optional[BaseException] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            code,
            context,
            ErrorCategory.NETWORK,
            ErrorSeverity.MEDIUM,
            cause=original_error,
        )
        self._original_error = original_error
        self._url = url
        self._timeout = timeout

    @property
    def original_error(self) -> Optional[BaseException]:
        return self._original_error

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def timeout(self) -> Optional[float]:
        return self._timeout

    def get_user_message(self) -> str:
        return (
            "Network connection error - please check your internet "
            "connection and try again"
        )

    def is_retryable(self) -> bool:
        return True


# ── Section 4: Errors raised by the core components ─────────────────────────


class CircularDependencyError(SembleError):
    """Service resolution revisited a service already being built."""

    def __init__(self, cycle: Sequence[str]) -> None:
        path: Tuple[str, ...] = tuple(cycle)
        super().__init__(
            f"Circular dependency detected: {' -> '.join(path)}",
            "CIRCULAR_DEPENDENCY",
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
        )
        self._cycle = path

    @property
    def cycle(self) -> Tuple[str, ...]:
        return self._cycle


class EventTimeoutError(SembleError):
    """No matching event arrived before the deadline."""

    def __init__(self, event_type: str, timeout_ms: float) -> None:
        super().__init__(
            f"Event '{event_type}' timeout after {timeout_ms:g}ms",
            "EVENT_TIMEOUT",
        )
        self._event_type = event_type
        self._timeout_ms = timeout_ms

    @property
    def event_type(self) -> str:
        return self._event_type

    @property
    def timeout_ms(self) -> float:
        return self._timeout_ms


class PipelineTimeoutError(SembleError):
    """The pipeline deadline elapsed before the next stage started."""

    def __init__(self, timeout_ms: float) -> None:
        super().__init__(
            f"Pipeline execution timed out after {timeout_ms:g}ms",
            "PIPELINE_TIMEOUT",
        )
        self._timeout_ms = timeout_ms

    @property
    def timeout_ms(self) -> float:
        return self._timeout_ms


# ── Section 5: Factory ──────────────────────────────────────────────────────


def permission_message(
    permission: str,
    field: Optional[str] = None,
    operation: Optional[str] = None,
) -> str:
    message = f"Access denied: missing permission '{permission}'"
    if field:
        message += f" for field '{field}'"
    if operation:
        message += f" in operation '{operation}'"
    return message


def lookup(obj: Any, *names: str) -> Any:
    """Return the first truthy key or attribute of ``obj`` among ``names``."""
    for name in names:
        if isinstance(obj, Mapping):
            value = obj.get(name)
        else:
            value = getattr(obj, name, None)
        if value:
            return value
    return None


def error_name(obj: Any) -> Optional[str]:
    if isinstance(obj, BaseException):
        return type(obj).__name__
    name = lookup(obj, "name")
    return name if isinstance(name, str) else None


def error_message(obj: Any) -> Optional[str]:
    if isinstance(obj, SembleError):
        return obj.message
    if isinstance(obj, BaseException):
        return str(obj) or None
    message = lookup(obj, "message")
    return str(message) if message else None


def status_of(obj: Any) -> Optional[int]:
    response = lookup(obj, "response")
    status = lookup(response, "status", "status_code") if response else None
    status = status or lookup(obj, "status", "statusCode", "status_code")
    try:
        return int(status) if status else None
    except (TypeError, ValueError):
        return None


def is_http_error(error: Any) -> bool:
    return status_of(error) is not None


def _to_api(error: Any, context: Mapping[str, Any]) -> SembleError:
    return SembleAPIError(
        error_message(error) or "API request failed",
        "API_ERROR",
        status_of(error),
        context,
        lookup(error, "response"),
    )


def _is_network(error: Any) -> bool:
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    return lookup(error, "code") in NETWORK_ERROR_CODES


def _to_network(error: Any, context: Mapping[str, Any]) -> SembleError:
    return SembleNetworkError(
        error_message(error) or "Network error",
        lookup(error, "code") or "NETWORK_ERROR",
        error if isinstance(error, BaseException) else None,
        lookup(error, "url"),
        lookup(error, "timeout"),
        context,
    )


def is_validation_error(error: Any) -> bool:
    return (
        error_name(error) == "ValidationError"
        or lookup(error, "code") == "VALIDATION_ERROR"
        or bool(lookup(error, "field") and lookup(error, "constraints"))
    )


def _to_validation(error: Any, context: Mapping[str, Any]) -> SembleError:
    return SembleValidationError(
        error_message(error) or "Validation failed",
        lookup(error, "field"),
        lookup(error, "value"),
        lookup(error, "constraints") or [],
        context,
    )


def is_permission_error(error: Any) -> bool:
    return bool(
        lookup(error, "code") == "PERMISSION_DENIED"
        or error_name(error) == "PermissionError"
        or lookup(error, "requiredPermission", "required_permission")
        or lookup(error, MISSING_PERMISSION_KEY)
    )


def _to_permission(error: Any, context: Mapping[str, Any]) -> SembleError:
    return SemblePermissionError(
        error_message(error) or "Permission denied",
        lookup(error, "requiredPermission", "required_permission") or "unknown",
        lookup(error, "field"),
        context.get("operation"),
        context,
    )


def _is_auth(error: Any) -> bool:
    return (
        lookup(error, "code") == "UNAUTHENTICATED"
        or error_name(error) == "AuthenticationError"
    )


def _to_auth(error: Any, context: Mapping[str, Any]) -> SembleError:
    return SembleAuthError(
        error_message(error) or "Authentication failed",
        lookup(error, "code") or "AUTH_ERROR",
        lookup(error, "credential") or "unknown",
        lookup(error, "hint"),
        context,
    )


ErrorStrategy = Tuple[
    Callable[[Any], bool], Callable[[Any, Mapping[str, Any]], SembleError]
]

# Tested in order; the first matching predicate wins.
ERROR_STRATEGIES: Tuple[ErrorStrategy, ...] = (
    (is_http_error, _to_api),
    (_is_network, _to_network),
    (is_validation_error, _to_validation),
    (is_permission_error, _to_permission),
    (_is_auth, _to_auth),
)


def create_error(
    error: Any, context: Optional[Mapping[str, Any]] = None
) -> SembleError:
    """Classify an error-like object into the closest ``SembleError``.

    Args:
        error: An exception or a mapping shaped like an upstream error.
        context: Context attached to the new error.

    Returns:
        ``error`` itself when it already is a ``SembleError``, otherwise a
        new instance of the matching subclass.
    """
    if isinstance(error, SembleError):
        return error
    ctx: Mapping[str, Any] = dict(context or {})
    for predicate, convert in ERROR_STRATEGIES:
        if predicate(error):
            return convert(error, ctx)
    return SembleError(
        error_message(error) or UNKNOWN_ERROR_MESSAGE,
        UNKNOWN_ERROR,
        ctx,
        cause=error if isinstance(error, BaseException) else None,
    )


def create_config_error(
    key: str,
    issue: str,
    expected_type: Optional[str] = None,
    actual_value: Any = None,
) -> SembleConfigError:
    return SembleConfigError(issue, key, expected_type, actual_value)


def create_permission_error(
    permission: str,
    field: Optional[str] = None,
    operation: Optional[str] = None,
) -> SemblePermissionError:
    return SemblePermissionError(
        permission_message(permission, field, operation),
        permission,
        field,
        operation,
    )


__all__: List[str] = [
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
    "ERROR_STRATEGIES",
    "create_error",
    "create_config_error",
    "create_permission_error",
    "permission_message",
    "lookup",
    "error_name",
    "error_message",
    "status_of",
    "is_http_error",
    "is_validation_error",
    "is_permission_error",
    "RATE_LIMIT_EXCEEDED",
    "UNKNOWN_ERROR",
    "UNKNOWN_ERROR_MESSAGE",
    "NETWORK_ERROR_CODES",
    "MISSING_PERMISSION_KEY",
    "FIELD_NAME_KEY",
    "ERROR_MESSAGE_KEY",
]
