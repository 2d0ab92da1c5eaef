"""Schema registry, version compatibility and payload migration.

Three concerns live here:

- **Validation**: a name -> ``SchemaDescriptor`` registry.  Descriptors are
  declarative (required fields, field kinds, enums, nested schemas) and are
  checked against raw envelope dicts at client ingress.
- **Versioning**: ``VersionedValue`` wraps a payload with the schema version it
  conforms to.  Two versions are wire-compatible iff their major numbers match.
- **Migration**: ``SchemaMigrator`` upgrades payloads along registered
  ``(type, from, to)`` hops.  Fields unknown to a schema travel in the
  ``extensions`` bag and are preserved across every hop.
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from mirastream.stream_runtime.models.enums import EventType, PatchOpType
from mirastream.stream_runtime.models.events import DEFAULT_SCHEMA_VERSION, EventEnvelope, now_ms

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class SchemaIncompatibleError(ValueError):
    """Major versions differ.  A protocol mismatch, not a data error."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Schema version {current} is incompatible with {target} (major version differs)")


class MigrationError(ValueError):
    """A registered migration failed."""


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


VERSION_PATTERN = r"[0-9]+\.[0-9]+\.[0-9]+"


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse ``MAJOR.MINOR.PATCH``.  Raises ``ValueError`` if malformed."""
    if not isinstance(version, str) or re.fullmatch(VERSION_PATTERN, version) is None:
        msg = f"Invalid schema version: {version!r}"
        raise ValueError(msg)
    major, minor, patch = (int(p) for p in version.split("."))
    return major, minor, patch


def is_compatible(a: str, b: str) -> bool:
    """Two schema versions are wire-compatible iff their majors match."""
    return parse_version(a)[0] == parse_version(b)[0]


# ---------------------------------------------------------------------------
# Versioned values and the extensions bag
# ---------------------------------------------------------------------------

T = TypeVar("T")


class VersionedValue(BaseModel, Generic[T]):
    """A payload tagged with the schema version it conforms to."""

    version: str = DEFAULT_SCHEMA_VERSION
    timestamp: float = Field(default_factory=now_ms)
    data: T
    extensions: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out = self.model_dump(mode="json")
        if not out.get("extensions"):
            out.pop("extensions", None)
        return out


def version_type(data: Any, version: str = DEFAULT_SCHEMA_VERSION) -> VersionedValue[Any]:
    """Wrap *data* as a ``VersionedValue``."""
    return VersionedValue[Any](version=version, data=data)


def _looks_versioned(value: Any) -> bool:
    return isinstance(value, Mapping) and "version" in value and "data" in value


def extract_data(value: Any) -> Any:
    """Return the payload of a versioned value, or *value* itself.

    ``None`` and raw (unversioned) values are returned unchanged.
    """
    if isinstance(value, VersionedValue):
        return value.data
    if _looks_versioned(value):
        return value["data"]
    return value


def preserve_unknown_fields(data: Mapping[str, Any], known: set[str] | list[str] | tuple[str, ...]) -> dict[str, Any]:
    """Split *data* into known keys plus an ``extensions`` bag of the rest.

    No ``extensions`` key is added when every key is known.
    """
    known_set = set(known)
    result: dict[str, Any] = {}
    extensions: dict[str, Any] = {}
    for key, value in data.items():
        if key in known_set:
            result[key] = value
        else:
            extensions[key] = value
    if extensions:
        result["extensions"] = extensions
    return result


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------

Migration = Callable[[Any], Any]


class SchemaMigrator:
    """Upgrades payloads between schema versions along registered hops."""

    def __init__(self) -> None:
        self._migrations: dict[str, dict[tuple[str, str], Migration]] = {}

    def register_migration(self, type_: str, from_version: str, to_version: str, migrate: Migration) -> None:
        parse_version(from_version)
        parse_version(to_version)
        self._migrations.setdefault(str(type_), {})[(from_version, to_version)] = migrate
        logger.debug("Migrator: registered {} {} -> {}", type_, from_version, to_version)

    def has_migrations(self, type_: str) -> bool:
        return bool(self._migrations.get(str(type_)))

    def _find_path(self, type_: str, start: str, goal: str) -> list[tuple[str, str]] | None:
        """Shortest chain of registered hops from *start* to *goal* (BFS)."""
        edges = self._migrations.get(type_, {})
        previous: dict[str, tuple[str, str] | None] = {start: None}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current == goal:
                break
            for src, dst in edges:
                if src == current and dst not in previous:
                    previous[dst] = (src, dst)
                    queue.append(dst)
        if goal not in previous:
            return None
        path: list[tuple[str, str]] = []
        node = goal
        while (hop := previous[node]) is not None:
            path.append(hop)
            node = hop[0]
        path.reverse()
        return path

    def migrate(self, type_: str, value: Any, target_version: str) -> VersionedValue[Any]:
        """Bring *value* to *target_version*.

        Unversioned input is wrapped at the target.  A major-version
        mismatch raises ``SchemaIncompatibleError``.  Between compatible
        versions with no registered chain the data is relabelled unchanged.
        """
        type_ = str(type_)
        if isinstance(value, VersionedValue):
            versioned: VersionedValue[Any] = value
        elif _looks_versioned(value):
            versioned = VersionedValue[Any].model_validate(value)
        else:
            return version_type(value, target_version)

        current = versioned.version
        if current == target_version:
            return versioned
        if not is_compatible(current, target_version):
            raise SchemaIncompatibleError(current, target_version)

        path = self._find_path(type_, current, target_version)
        if path is None:
            logger.debug("Migrator: no chain for {} {} -> {}, relabelling", type_, current, target_version)
            return versioned.model_copy(update={"version": target_version})

        data = versioned.data
        for hop in path:
            try:
                data = self._migrations[type_][hop](data)
            except Exception as exc:
                msg = f"Migration {type_} {hop[0]} -> {hop[1]} failed: {exc}"
                raise MigrationError(msg) from exc
        return VersionedValue[Any](
            version=target_version,
            timestamp=versioned.timestamp,
            data=data,
            extensions=versioned.extensions,
        )

    def migrate_envelope(self, envelope: EventEnvelope, target_version: str) -> EventEnvelope:
        """Return *envelope* with its payload migrated to *target_version*."""
        if envelope.schema_version == target_version:
            return envelope
        migrated = self.migrate(
            envelope.type,
            VersionedValue[Any](version=envelope.schema_version, timestamp=envelope.timestamp, data=envelope.data),
            target_version,
        )
        return envelope.model_copy(update={"schema_version": target_version, "data": migrated.data})


# ---------------------------------------------------------------------------
# Declarative schemas
# ---------------------------------------------------------------------------

FieldKind = Literal["string", "number", "integer", "boolean", "object", "array", "any"]

_KIND_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, int | float) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, Mapping),
    "array": lambda v: isinstance(v, list),
    "any": lambda v: True,
}


@dataclass(frozen=True)
class FieldSpec:
    kind: FieldKind = "any"
    nullable: bool = False
    enum: tuple[Any, ...] | None = None
    const: Any = None
    schema: SchemaDescriptor | None = None
    items: FieldSpec | None = None
    pattern: str | None = None
    """Full-match regex for string values."""


@dataclass(frozen=True)
class SchemaDescriptor:
    """Required fields plus per-field specs.  Unlisted fields are allowed."""

    required: tuple[str, ...] = ()
    fields: dict[str, FieldSpec] = field(default_factory=dict)

    def validate(self, document: Any, path: str = "") -> list[str]:
        if not isinstance(document, Mapping):
            return [f"{path or '<root>'}: expected object"]
        errors = [f"{path}/{name}: required" for name in self.required if name not in document]
        for name, spec in self.fields.items():
            if name in document:
                errors.extend(_check_field(spec, document[name], f"{path}/{name}"))
        return errors


def _check_field(spec: FieldSpec, value: Any, path: str) -> list[str]:
    if value is None:
        return [] if spec.nullable else [f"{path}: must not be null"]
    if not _KIND_CHECKS[spec.kind](value):
        return [f"{path}: expected {spec.kind}"]
    if spec.const is not None and value != spec.const:
        return [f"{path}: expected {spec.const!r}"]
    if spec.enum is not None and value not in spec.enum:
        return [f"{path}: {value!r} not in {list(spec.enum)}"]
    if spec.pattern is not None and re.fullmatch(spec.pattern, str(value)) is None:
        return [f"{path}: {value!r} does not match {spec.pattern}"]
    errors: list[str] = []
    if spec.schema is not None:
        errors.extend(spec.schema.validate(value, path))
    if spec.items is not None:
        for i, item in enumerate(value):
            errors.extend(_check_field(spec.items, item, f"{path}/{i}"))
    return errors


class SchemaRegistry:
    """Name -> schema descriptor mapping."""

    def __init__(self) -> None:
        self._schemas: dict[str, SchemaDescriptor] = {}

    def register(self, name: str, schema: SchemaDescriptor) -> None:
        self._schemas[str(name)] = schema

    def get(self, name: str) -> SchemaDescriptor | None:
        return self._schemas.get(str(name))

    def list(self) -> list[tuple[str, SchemaDescriptor]]:
        return list(self._schemas.items())

    def validate(self, name: str, document: Any) -> list[str]:
        """Return violations of schema *name*.  ``KeyError`` if unregistered."""
        schema = self._schemas.get(str(name))
        if schema is None:
            raise KeyError(name)
        return schema.validate(document)


# -- Built-in envelope schemas -------------------------------------------------

ENVELOPE = "envelope"

_STRING = FieldSpec("string")
_NUMBER = FieldSpec("number")
_INTEGER = FieldSpec("integer")

ENVELOPE_SCHEMA = SchemaDescriptor(
    required=("event_id", "schema_version", "type", "timestamp", "sequence_number", "data"),
    fields={
        "event_id": _STRING,
        "schema_version": FieldSpec("string", pattern=VERSION_PATTERN),
        "type": FieldSpec("string", enum=tuple(t.value for t in EventType)),
        "timestamp": _NUMBER,
        "sequence_number": _INTEGER,
        "parent_event_id": FieldSpec("string", nullable=True),
        "context": FieldSpec("object", nullable=True),
        "data": FieldSpec("object"),
    },
)

_PATCH_OP = SchemaDescriptor(
    required=("op", "path"),
    fields={
        "op": FieldSpec("string", enum=tuple(o.value for o in PatchOpType)),
        "path": _STRING,
        "from": _STRING,
    },
)

PAYLOAD_SCHEMAS: dict[EventType, SchemaDescriptor] = {
    EventType.TEXT_MESSAGE_START: SchemaDescriptor(required=("message_id",), fields={"message_id": _STRING}),
    EventType.TEXT_CONTENT: SchemaDescriptor(
        required=("chunk", "chunk_index"), fields={"chunk": _STRING, "chunk_index": _INTEGER}
    ),
    EventType.TEXT_MESSAGE_END: SchemaDescriptor(required=("total_chunks",), fields={"total_chunks": _INTEGER}),
    EventType.RESPONSE_COMPLETE: SchemaDescriptor(
        required=("updated_state",),
        fields={"updated_state": FieldSpec("object"), "analysis": FieldSpec("object", nullable=True)},
    ),
    EventType.STATE_DELTA: SchemaDescriptor(
        required=("version", "operations"),
        fields={
            "version": _INTEGER,
            "timestamp": _NUMBER,
            "operations": FieldSpec("array", items=FieldSpec("object", schema=_PATCH_OP)),
            "full_state": FieldSpec("object", nullable=True),
        },
    ),
    EventType.RAPPORT_UPDATE: SchemaDescriptor(
        required=("confidence",), fields={"confidence": _NUMBER, "formatted_bar": _STRING}
    ),
    EventType.TOOL_CALL_START: SchemaDescriptor(required=("tool_call_id",), fields={"tool_call_id": _STRING}),
    EventType.TOOL_CALL_RESULT: SchemaDescriptor(required=("tool_call_id",), fields={"tool_call_id": _STRING}),
    EventType.TOOL_CALL_END: SchemaDescriptor(required=("tool_call_id",), fields={"tool_call_id": _STRING}),
    EventType.ERROR: SchemaDescriptor(
        required=("code", "message"),
        fields={"code": _STRING, "message": _STRING, "recoverable": FieldSpec("boolean")},
    ),
    EventType.ACK: SchemaDescriptor(required=("acked_event_id",), fields={"acked_event_id": _STRING}),
    EventType.ANALYSIS_COMPLETE: SchemaDescriptor(
        required=("reasoning", "metrics"),
        fields={"reasoning": _STRING, "metrics": FieldSpec("object"), "confidence_delta": _NUMBER},
    ),
}


def default_registry() -> SchemaRegistry:
    """A registry with the envelope schema and one schema per event type."""
    registry = SchemaRegistry()
    registry.register(ENVELOPE, ENVELOPE_SCHEMA)
    for event_type, schema in PAYLOAD_SCHEMAS.items():
        registry.register(event_type, schema)
    return registry


def validate_envelope(raw: Any, registry: SchemaRegistry | None = None) -> list[str]:
    """Validate a raw envelope dict and its payload against *registry*."""
    registry = registry or default_registry()
    errors = registry.validate(ENVELOPE, raw)
    if errors:
        return errors
    payload_schema = registry.get(raw["type"])
    if payload_schema is not None:
        errors.extend(payload_schema.validate(raw["data"], "/data"))
    return errors
