"""Translation of raw upstream errors into the ``SembleError`` hierarchy.

Every input produces exactly one typed error; nothing is suppressed.
"""

from __future__ import annotations

import copy
import logging
import re
import traceback
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from semble_core.errors import (
    RATE_LIMIT_EXCEEDED,
    UNKNOWN_ERROR,
    UNKNOWN_ERROR_MESSAGE,
    ErrorSeverity,
    SembleAPIError,
    SembleAuthError,
    SembleError,
    SemblePermissionError,
    SembleValidationError,
    error_message,
    is_http_error,
    is_permission_error,
    is_validation_error,
    lookup,
    status_of,
)

logger = logging.getLogger("semble_core.error_mapper")

HTTP_ERROR_MESSAGES: Dict[int, str] = {
    400: "Bad request - please check your input data",
    401: "Authentication failed - invalid credentials",
    403: "Access denied - insufficient permissions",
    404: "Resource not found",
    409: "Conflict - resource already exists or is in use",
    422: "Validation failed - please check your input data",
    429: "Rate limit exceeded - please try again later",
    500: "Internal server error - please try again",
    502: "Bad gateway - service temporarily unavailable",
    503: "Service unavailable - please try again later",
    504: "Gateway timeout - request took too long",
}

PERMISSION_DENIED: str = "PERMISSION_DENIED"
AUTH_HINT: str = "Please check your API credentials and permissions"

_SEVERITY_LEVELS: Dict[ErrorSeverity, int] = {
    ErrorSeverity.CRITICAL: logging.ERROR,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.LOW: logging.INFO,
}

# JS "at fn (file:1:2)" frames and Python "File "x", line N, in fn" frames.
_STACK_FRAGMENTS = re.compile(r'at .*\(.*\)|File ".*?", line \d+(?:, in \S+)?')
_WHITESPACE = re.compile(r"\s+")


class ErrorMapperConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    include_stack_trace: bool = Field(default=False)
    include_context: bool = Field(default=True)
    simplify_messages: bool = Field(
        default=True, description="Strip stack fragments from fallback messages"
    )
    log_errors: bool = Field(default=True)


def is_graphql_error(error: Any) -> bool:
    return bool(
        lookup(error, "extensions")
        or (lookup(error, "message") and lookup(error, "locations"))
        or lookup(error, "path")
    )


def _extensions(error: Any) -> Mapping[str, Any]:
    extensions = lookup(error, "extensions")
    return extensions if isinstance(extensions, Mapping) else {}


def _permission_message(permission: str, field: Optional[str] = None) -> str:
    message = f"Access denied - missing permission: {permission}"
    if field:
        message += f" for field '{field}'"
    return message


class ErrorMapper:
    """Maps GraphQL, HTTP, validation and permission errors.

    Usage:
        mapper = ErrorMapper()
        error = mapper.map_error(raw, {"operation": "getPatient"})
        data = mapper.process_field_permissions(data, graphql_errors)
    """

    def __init__(self, config: Optional[ErrorMapperConfig] = None) -> None:
        self.config = config or ErrorMapperConfig()
        # Tested in order; the first matching predicate wins.
        self._strategies: Tuple[
            Tuple[Callable[[Any], bool], Callable[[Any, Mapping[str, Any]], SembleError]],
            ...,
        ] = (
            (is_graphql_error, self.map_graphql_error),
            (is_http_error, self.map_http_error),
            (is_validation_error, self.map_validation_error),
            (is_permission_error, self.map_permission_error),
        )

    def map_error(
        self, error: Any, context: Optional[Mapping[str, Any]] = None
    ) -> SembleError:
        """Return ``error`` unchanged if already typed, else its typed form."""
        if isinstance(error, SembleError):
            return error
        ctx: Mapping[str, Any] = dict(context or {})
        for predicate, convert in self._strategies:
            if predicate(error):
                mapped = convert(error, ctx)
                break
        else:
            mapped = SembleError(
                self.sanitize_message(error_message(error) or UNKNOWN_ERROR_MESSAGE),
                UNKNOWN_ERROR,
                ctx,
                cause=error if isinstance(error, BaseException) else None,
            )
        self.log_error(mapped)
        return mapped

    def map_graphql_error(
        self, error: Any, context: Optional[Mapping[str, Any]] = None
    ) -> SembleError:
        ctx: Mapping[str, Any] = dict(context or {})
        extensions = _extensions(error)
        message = error_message(error) or "GraphQL operation failed"
        code = extensions.get("code") or "GRAPHQL_ERROR"

        permission = extensions.get("permission")
        if permission:
            return SemblePermissionError(
                _permission_message(permission, extensions.get("field")),
                permission,
                extensions.get("field"),
                ctx.get("operation"),
                ctx,
            )
        if code in ("BAD_USER_INPUT", "VALIDATION_ERROR"):
            return SembleValidationError(
                message,
                extensions.get("field"),
                extensions.get("value"),
                extensions.get("constraints"),
                ctx,
            )
        if code in ("UNAUTHENTICATED", "FORBIDDEN"):
            return SembleAuthError(message, code, "api_key", AUTH_HINT, ctx)
        return SembleAPIError(message, code, None, ctx, error)

    def map_http_error(
        self, error: Any, context: Optional[Mapping[str, Any]] = None
    ) -> SembleError:
        """Dispatch on the numeric status; missing status counts as 500."""
        ctx: Mapping[str, Any] = dict(context or {})
        status = status_of(error) or 500
        response = lookup(error, "response")
        data = lookup(response, "data") if response is not None else None
        data = data if data is not None else lookup(error, "data")

        if status == 401:
            return SembleAuthError(
                "Authentication failed - please check your API credentials",
                "AUTHENTICATION_FAILED",
                "api_key",
                "Verify your API key is correct and has not expired",
                ctx,
            )
        if status == 403:
            return SemblePermissionError(
                "Access denied - insufficient permissions",
                "unknown",
                None,
                ctx.get("operation"),
                ctx,
            )
        if status == 404:
            return SembleAPIError(
                f"Resource not found: {ctx.get('resource') or 'Unknown resource'}",
                "RESOURCE_NOT_FOUND",
                status,
                ctx,
                data,
            )
        if status == 429:
            return SembleAPIError(
                "API rate limit exceeded - please try again later",
                RATE_LIMIT_EXCEEDED,
                status,
                ctx,
                data,
            )
        if status >= 500:
            return SembleAPIError(
                "Semble API server error - please try again",
                "SERVER_ERROR",
                status,
                ctx,
                data,
            )
        message = (
            error_message(error)
            or HTTP_ERROR_MESSAGES.get(status)
            or f"HTTP error {status}"
        )
        return SembleAPIError(message, "HTTP_ERROR", status, ctx, data)

    def map_validation_error(
        self, error: Any, context: Optional[Mapping[str, Any]] = None
    ) -> SembleValidationError:
        message = error_message(error) or "Validation failed"
        return SembleValidationError(
            message,
            lookup(error, "field"),
            lookup(error, "value"),
            lookup(error, "constraints") or [message],
            dict(context or {}),
        )

    def map_permission_error(
        self, error: Any, context: Optional[Mapping[str, Any]] = None
    ) -> SemblePermissionError:
        ctx: Mapping[str, Any] = dict(context or {})
        permission = (
            lookup(error, "requiredPermission", "required_permission") or "unknown"
        )
        field = lookup(error, "field") or lookup(ctx.get("metadata"), "field")
        return SemblePermissionError(
            _permission_message(permission, field),
            permission,
            field,
            ctx.get("operation"),
            ctx,
        )

    def process_field_permissions(
        self, data: Any, errors: Optional[Sequence[Any]] = None
    ) -> Any:
        """Replace fields denied by ``PERMISSION_DENIED`` GraphQL errors.

        The value at each error's ``path`` becomes a permission placeholder
        in a deep copy of ``data``; everything else is left as it was.
        Errors whose path does not fit the shape of ``data`` are skipped.
        ``data`` itself is never modified.
        """
        if not isinstance(data, (dict, list)):
            return data
        denied = [
            error
            for error in errors or ()
            if _extensions(error).get("code") == PERMISSION_DENIED
        ]
        if not denied:
            return data

        processed = copy.deepcopy(data)
        for error in denied:
            path = list(lookup(error, "path") or ())
            if not path:
                continue
            extensions = _extensions(error)
            field = extensions.get("field") or next(
                (p for p in reversed(path) if isinstance(p, str)), None
            )
            if not field:
                continue
            if not _path_fits(processed, path):
                logger.debug("Path %s does not match the response shape, skipped", path)
                continue
            _set_path(
                processed,
                path,
                SemblePermissionError.create_field_placeholder(
                    field, extensions.get("permission") or "unknown"
                ),
            )
        return processed

    def sanitize_message(self, message: str) -> str:
        if not self.config.simplify_messages:
            return message
        return _WHITESPACE.sub(" ", _STACK_FRAGMENTS.sub("", message)).strip()

    def log_error(self, error: SembleError) -> None:
        """Log ``error`` at the level its severity calls for."""
        if not self.config.log_errors:
            return
        details: Dict[str, Any] = {
            "code": error.code,
            "category": error.category.value,
            "severity": error.severity.value,
        }
        if self.config.include_context:
            details["context"] = dict(error.context)
        if self.config.include_stack_trace and error.__traceback__ is not None:
            details["stack"] = "".join(traceback.format_tb(error.__traceback__))
        logger.log(
            _SEVERITY_LEVELS.get(error.severity, logging.ERROR),
            "%s: %s %s",
            error.name,
            error.message,
            details,
        )


def _path_fits(target: Any, path: Sequence[Any]) -> bool:
    """True when every step of ``path`` indexes the container it meets.

    Lists take non-negative ints and dicts take strings. Missing or null
    nodes are fine since ``_set_path`` creates them to match the keys.
    """
    current = target
    for key in path:
        if isinstance(key, bool) or not isinstance(key, (int, str)):
            return False
        if isinstance(key, int) and key < 0:
            return False
        if current is None:
            continue
        if isinstance(current, list):
            if not isinstance(key, int):
                return False
            current = current[key] if key < len(current) else None
        elif isinstance(current, dict):
            if not isinstance(key, str):
                return False
            current = current.get(key)
        else:
            return False
    return True


def _set_path(target: Any, path: List[Any], value: Any) -> None:
    current = target
    for key, following in zip(path, path[1:]):
        if isinstance(current, list):
            while len(current) <= key:
                current.append(None)
            if current[key] is None:
                current[key] = [] if isinstance(following, int) else {}
        elif key not in current or current[key] is None:
            current[key] = [] if isinstance(following, int) else {}
        current = current[key]
    last = path[-1]
    if isinstance(current, list):
        while len(current) <= last:
            current.append(None)
    current[last] = value
