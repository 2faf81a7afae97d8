"""Versioned registry of resource field schemas.

Schemas are pydantic models keyed by lower-cased resource type. Each type
keeps its full version history; "latest" is the most recently registered
version, which is not necessarily the highest one.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from semble_core.errors import SembleError
from semble_core.events import (
    SCHEMA_REGISTERED,
    SCHEMA_UPDATED,
    EventSystem,
    create_event,
)

logger = logging.getLogger("semble_core.schema_registry")

# ── Constants ────────────────────────────────────────────────────────────────

VALID_ACTIONS: Tuple[str, ...] = ("create", "get", "getMany", "update", "delete")

FIELD_TYPE_MAP: Dict[str, str] = {
    "string": "string",
    "number": "number",
    "boolean": "boolean",
    "date": "dateTime",
    "enum": "options",
    "array": "multiOptions",
    "object": "json",
}

DEFAULT_VERSION: str = "1.0.0"
SYSTEM_AUTHOR: str = "system"

_CAMEL_BOUNDARY = re.compile(r"(?=[A-Z])")
_SPECIFIER_PREFIXES = ("<", ">", "=", "!", "~")


# ── Models ───────────────────────────────────────────────────────────────────


class SchemaVersion(BaseModel):
    """Version descriptor attached to every registered schema."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(..., description="Semver-like version string")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When this version was authored",
    )
    author: str = Field(default=SYSTEM_AUTHOR)
    description: str = Field(default="")
    breaking: bool = Field(
        default=False, description="Declared as a breaking revision"
    )


class FieldValidationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["required", "type", "pattern", "range", "custom"]
    params: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class FieldConditionalRule(BaseModel):
    """Display rule for a field.

    ``condition`` uses the form ``"otherField=value1,value2"``.
    """

    model_config = ConfigDict(frozen=True)

    condition: str
    action: Literal["show", "hide", "require", "disable"]
    target: Optional[str] = None


class FieldSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    required: bool = False
    description: Optional[str] = None
    validation: List[FieldValidationRule] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    conditional: List[FieldConditionalRule] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ResourceSchema(BaseModel):
    """Field layout of one resource type at one version."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = Field(..., description="Resource type key, e.g. 'patient'")
    version: SchemaVersion
    fields: List[FieldSchema] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=lambda: list(VALID_ACTIONS))
    permissions: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class SchemaValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class SchemaChangeImpact:
    """Difference between two versions of a schema."""

    breaking: bool
    added_fields: List[str] = field(default_factory=list)
    removed_fields: List[str] = field(default_factory=list)
    modified_fields: List[str] = field(default_factory=list)
    compatibility_issues: List[str] = field(default_factory=list)


SchemaInput = Union[ResourceSchema, Mapping[str, Any]]


# ── Registry ─────────────────────────────────────────────────────────────────


class SchemaRegistry:
    """Store of resource schemas with versioning and change analysis.

    Usage:
        registry = SchemaRegistry()
        registry.register_schema(create_schema("Patient", "patient", [...]))
        latest = registry.get_latest_schema("patient")
    """

    def __init__(self, event_system: Optional[EventSystem] = None) -> None:
        self._schemas: Dict[str, Dict[str, ResourceSchema]] = {}
        self._latest_versions: Dict[str, str] = {}
        self._history: Dict[str, List[SchemaVersion]] = {}
        self._dependencies: Dict[str, Set[str]] = {}
        self._event_system = event_system

    def register_schema(self, schema: SchemaInput) -> ResourceSchema:
        """Validate and store ``schema`` as the latest version of its type.

        Raises:
            SembleError: If validation fails or the (type, version) pair
                is already registered.
        """
        validation = self.validate_schema(schema)
        if not validation.is_valid:
            raise SembleError(
                f"Schema validation failed: {', '.join(validation.errors)}",
                "SCHEMA_VALIDATION_ERROR",
            )
        schema = _coerce(schema)
        key = _schema_key(schema.type)
        version = schema.version.version

        versions = self._schemas.setdefault(key, {})
        history = self._history.setdefault(key, [])
        if version in versions:
            raise SembleError(
                f"Schema version {version} already exists for {schema.type}",
                "SCHEMA_VERSION_EXISTS",
            )

        previous = self.get_latest_schema(schema.type) if history else None
        if previous is not None:
            impact = self.analyze_schema_changes(previous, schema)
            if impact.breaking and not schema.version.breaking:
                logger.warning(
                    "Schema %s v%s introduces breaking changes but is not marked as breaking: %s",
                    schema.type,
                    version,
                    "; ".join(impact.compatibility_issues),
                )

        versions[version] = schema
        history.append(schema.version)
        self._latest_versions[key] = version
        self._dependencies[key] = {
            dep for schema_field in schema.fields for dep in schema_field.dependencies
        }
        logger.info("Registered schema %s v%s", schema.type, version)

        if self._event_system is not None:
            self._event_system.emit_nowait(
                create_event(
                    SCHEMA_REGISTERED,
                    "SchemaRegistry",
                    schema_name=schema.name,
                    version=version,
                )
            )
            if previous is not None:
                self._event_system.emit_nowait(
                    create_event(
                        SCHEMA_UPDATED,
                        "SchemaRegistry",
                        schema_name=schema.name,
                        old_version=previous.version.version,
                        new_version=version,
                    )
                )
        return schema

    # Lookup

    def get_schema(
        self, resource_type: str, version: Optional[str] = None
    ) -> Optional[ResourceSchema]:
        key = _schema_key(resource_type)
        versions = self._schemas.get(key)
        if not versions:
            return None
        if version:
            return versions.get(version)
        latest = self._latest_versions.get(key)
        return versions.get(latest) if latest else None

    def get_latest_schema(self, resource_type: str) -> Optional[ResourceSchema]:
        return self.get_schema(resource_type)

    def get_all_schemas(self) -> List[ResourceSchema]:
        return [
            schema for versions in self._schemas.values() for schema in versions.values()
        ]

    def get_schema_versions(self, resource_type: str) -> List[SchemaVersion]:
        return list(self._history.get(_schema_key(resource_type), []))

    def get_schema_by_pattern(
        self, resource_type: str, pattern: str
    ) -> Optional[ResourceSchema]:
        """Newest-registered schema whose version matches ``pattern``.

        ``pattern`` is an exact version, a wildcard such as ``"1.x"`` or a
        PEP 440 specifier such as ``">=2.0.0"``.
        """
        for entry in reversed(self.get_schema_versions(resource_type)):
            if _matches_pattern(entry.version, pattern):
                return self.get_schema(resource_type, entry.version)
        return None

    def get_schema_dependencies(self, resource_type: str) -> List[str]:
        return sorted(self._dependencies.get(_schema_key(resource_type), set()))

    # Validation and analysis

    def validate_schema(self, schema: SchemaInput) -> SchemaValidationResult:
        """Check structure without registering.

        Dependency warnings are order-sensitive: a field naming a field
        declared later in the list is reported.
        """
        raw = _as_mapping(schema)
        errors: List[str] = []
        warnings: List[str] = []

        if not raw.get("name"):
            errors.append("Schema name is required")
        if not raw.get("type"):
            errors.append("Schema type is required")
        if not raw.get("version"):
            errors.append("Schema version is required")

        fields = raw.get("fields")
        if not isinstance(fields, (list, tuple)):
            errors.append("Schema fields must be an array")
        else:
            seen: Set[str] = set()
            for raw_field in fields:
                raw_field = _as_mapping(raw_field)
                name = raw_field.get("name")
                if name in seen:
                    errors.append(f"Duplicate field name: {name}")
                elif name:
                    seen.add(name)
                if not name:
                    errors.append("Field name is required")
                if not raw_field.get("type"):
                    errors.append(f"Field type is required for field: {name}")
                for dep in raw_field.get("dependencies") or ():
                    if dep not in seen:
                        warnings.append(f"Field {name} depends on undefined field: {dep}")

        actions = raw.get("actions")
        if isinstance(actions, (list, tuple)):
            for action in actions:
                if action not in VALID_ACTIONS:
                    errors.append(f"Invalid action: {action}")

        return SchemaValidationResult(
            is_valid=not errors, errors=errors, warnings=warnings
        )

    def analyze_schema_changes(
        self, old_schema: ResourceSchema, new_schema: ResourceSchema
    ) -> SchemaChangeImpact:
        old_fields = {f.name: f for f in old_schema.fields}
        new_fields = {f.name: f for f in new_schema.fields}

        added = [name for name in new_fields if name not in old_fields]
        removed = [name for name in old_fields if name not in new_fields]
        issues = [f"Field removed: {name}" for name in removed]
        modified: List[str] = []

        for name, new_field in new_fields.items():
            old_field = old_fields.get(name)
            if old_field is None or not _is_field_modified(old_field, new_field):
                continue
            modified.append(name)
            if new_field.required and not old_field.required:
                issues.append(f"Field {name} is now required")
            if old_field.type != new_field.type:
                issues.append(
                    f"Field {name} type changed from {old_field.type} to {new_field.type}"
                )

        return SchemaChangeImpact(
            breaking=bool(removed or issues),
            added_fields=added,
            removed_fields=removed,
            modified_fields=modified,
            compatibility_issues=issues,
        )

    def generate_node_properties(
        self, schema: ResourceSchema, action: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Project ``schema`` into host UI property descriptors."""
        properties: List[Dict[str, Any]] = []
        for schema_field in schema.fields:
            if action and not _is_relevant_for_action(schema_field, action):
                continue
            prop: Dict[str, Any] = {
                "displayName": format_display_name(schema_field.name),
                "name": schema_field.name,
                "type": FIELD_TYPE_MAP.get(schema_field.type, "string"),
                "default": _field_default(schema_field),
                "description": schema_field.description or f"{schema_field.name} field",
                "required": schema_field.required,
            }
            _apply_validation_rules(prop, schema_field.validation)
            _apply_conditional_rules(prop, schema_field.conditional)
            properties.append(prop)
        return properties

    # Import, export and bookkeeping

    def export_schema(self, resource_type: str, version: Optional[str] = None) -> str:
        schema = self.get_schema(resource_type, version)
        if schema is None:
            suffix = f" v{version}" if version else ""
            raise SembleError(
                f"Schema not found: {resource_type}{suffix}", "SCHEMA_NOT_FOUND"
            )
        return schema.model_dump_json(indent=2)

    def import_schema(self, json_string: str) -> ResourceSchema:
        """Parse and register a schema produced by :meth:`export_schema`."""
        try:
            schema = ResourceSchema.model_validate_json(json_string)
            return self.register_schema(schema)
        except (ValidationError, SembleError) as e:
            raise SembleError(
                f"Failed to import schema: {e}", "SCHEMA_IMPORT_ERROR", cause=e
            ) from e

    def get_statistics(self) -> Dict[str, Any]:
        schemas = self.get_all_schemas()
        by_type: Dict[str, int] = {}
        total_fields = 0
        for schema in schemas:
            by_type[schema.type] = by_type.get(schema.type, 0) + 1
            total_fields += len(schema.fields)
        return {
            "total_schemas": len(schemas),
            "schemas_by_type": by_type,
            "total_fields": total_fields,
            "average_fields_per_schema": total_fields / len(schemas) if schemas else 0,
        }

    def clear(self) -> None:
        self._schemas.clear()
        self._latest_versions.clear()
        self._history.clear()
        self._dependencies.clear()


# ── Helpers ──────────────────────────────────────────────────────────────────


def _schema_key(resource_type: str) -> str:
    return resource_type.lower()


def _as_mapping(value: Any) -> Mapping[str, Any]:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, Mapping):
        return value
    return {}


def _coerce(schema: SchemaInput) -> ResourceSchema:
    if isinstance(schema, ResourceSchema):
        return schema
    try:
        return ResourceSchema.model_validate(schema)
    except ValidationError as e:
        raise SembleError(
            f"Schema validation failed: {e}", "SCHEMA_VALIDATION_ERROR", cause=e
        ) from e


def _matches_pattern(version: str, pattern: str) -> bool:
    if "x" in pattern:
        parts = [r"\d+" if part == "x" else re.escape(part) for part in pattern.split(".")]
        return re.match(r"\.".join(parts) + r"(\.|$)", version) is not None
    if pattern.startswith(_SPECIFIER_PREFIXES):
        try:
            specifier = SpecifierSet(pattern)
        except InvalidSpecifier as e:
            raise SembleError(
                f"Invalid version pattern: {pattern}", "SCHEMA_PATTERN_ERROR", cause=e
            ) from e
        try:
            return specifier.contains(Version(version), prereleases=True)
        except InvalidVersion:
            return False
    return version == pattern


def _is_field_modified(old: FieldSchema, new: FieldSchema) -> bool:
    return (
        old.type != new.type
        or old.required != new.required
        or old.validation != new.validation
        or old.dependencies != new.dependencies
    )


def _is_relevant_for_action(schema_field: FieldSchema, action: str) -> bool:
    return not (action == "create" and schema_field.name == "id")


def format_display_name(field_name: str) -> str:
    """``"dateOfBirth"`` -> ``"Date Of Birth"``."""
    words = [word for word in _CAMEL_BOUNDARY.split(field_name) if word]
    return " ".join(word[:1].upper() + word[1:] for word in words)


def _field_default(schema_field: FieldSchema) -> Any:
    if "default" in schema_field.metadata:
        return schema_field.metadata["default"]
    if schema_field.type == "boolean":
        return False
    if schema_field.type == "number":
        return 0
    if schema_field.type == "array":
        return []
    if schema_field.type == "object":
        return {}
    return ""


def _apply_validation_rules(
    prop: Dict[str, Any], rules: Sequence[FieldValidationRule]
) -> None:
    for rule in rules:
        params = rule.params or {}
        if rule.type == "pattern" and "pattern" in params:
            prop["typeOptions"] = {**prop.get("typeOptions", {}), "regex": params["pattern"]}
        elif rule.type == "range" and prop["type"] == "number":
            prop["typeOptions"] = {
                **prop.get("typeOptions", {}),
                "minValue": params.get("min"),
                "maxValue": params.get("max"),
            }


def _apply_conditional_rules(
    prop: Dict[str, Any], rules: Sequence[FieldConditionalRule]
) -> None:
    for rule in rules:
        if rule.action in ("show", "hide"):
            prop["displayOptions"] = {
                **prop.get("displayOptions", {}),
                rule.action: _parse_condition(rule.condition),
            }
        elif rule.action == "require":
            prop["required"] = True


def _parse_condition(condition: str) -> Dict[str, List[Any]]:
    target, sep, values = condition.partition("=")
    target = target.strip()
    if not sep or not target:
        return {"@version": [1]}
    return {target: [value.strip() for value in values.split(",") if value.strip()]}


# ── Builders ─────────────────────────────────────────────────────────────────


def create_schema(
    name: str,
    resource_type: str,
    fields: Sequence[Mapping[str, Any]],
    version: str = DEFAULT_VERSION,
) -> ResourceSchema:
    """Build a schema from partial field mappings with system defaults."""
    return ResourceSchema(
        name=name,
        type=resource_type,
        version=SchemaVersion(
            version=version,
            author=SYSTEM_AUTHOR,
            description=f"Schema for {name}",
        ),
        fields=[
            FieldSchema(
                name=entry.get("name") or "",
                type=entry.get("type") or "string",
                required=bool(entry.get("required", False)),
                description=entry.get("description"),
                validation=entry.get("validation") or [],
                dependencies=entry.get("dependencies") or [],
                conditional=entry.get("conditional") or [],
                metadata=entry.get("metadata") or {},
            )
            for entry in fields
        ],
        actions=list(VALID_ACTIONS),
    )


def register_common_schemas(registry: SchemaRegistry) -> None:
    """Register the built-in patient and booking schemas."""
    registry.register_schema(
        create_schema(
            "Patient",
            "patient",
            [
                {"name": "id", "type": "string", "description": "Patient ID"},
                {"name": "firstName", "type": "string", "required": True, "description": "First name"},
                {"name": "lastName", "type": "string", "required": True, "description": "Last name"},
                {"name": "email", "type": "string", "description": "Email address"},
                {"name": "phone", "type": "string", "description": "Phone number"},
                {"name": "dateOfBirth", "type": "date", "description": "Date of birth"},
            ],
        )
    )
    registry.register_schema(
        create_schema(
            "Booking",
            "booking",
            [
                {"name": "id", "type": "string", "description": "Booking ID"},
                {"name": "patientId", "type": "string", "required": True, "description": "Patient ID"},
                {"name": "doctorId", "type": "string", "required": True, "description": "Doctor ID"},
                {"name": "startTime", "type": "date", "required": True, "description": "Start time"},
                {"name": "endTime", "type": "date", "required": True, "description": "End time"},
                {"name": "status", "type": "enum", "description": "Booking status"},
            ],
        )
    )
    logger.info("Common schemas registered")
