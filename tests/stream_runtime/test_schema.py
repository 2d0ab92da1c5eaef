"""Tests for schema validation, versioning and migration."""

from __future__ import annotations

import pytest

from mirastream.stream_runtime.models.enums import EventType
from mirastream.stream_runtime.models.events import EventEnvelope, TextContent, parse_payload
from mirastream.stream_runtime.protocol.schema import (
    ENVELOPE,
    FieldSpec,
    MigrationError,
    SchemaDescriptor,
    SchemaIncompatibleError,
    SchemaMigrator,
    SchemaRegistry,
    VersionedValue,
    default_registry,
    extract_data,
    is_compatible,
    parse_version,
    preserve_unknown_fields,
    validate_envelope,
    version_type,
)


def _raw_envelope(**overrides: object) -> dict:
    raw = {
        "event_id": "evt_1",
        "schema_version": "1.0.0",
        "type": "TEXT_CONTENT",
        "timestamp": 1700000000000,
        "sequence_number": 0,
        "data": {"chunk": "hi", "chunk_index": 0},
    }
    raw.update(overrides)
    return raw


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


def test_parse_version() -> None:
    assert parse_version("1.2.3") == (1, 2, 3)


@pytest.mark.parametrize("bad", ["1.2", "1.2.x", "", "v1.0.0"])
def test_parse_version_rejects_malformed(bad: str) -> None:
    with pytest.raises(ValueError):
        parse_version(bad)


def test_is_compatible_compares_majors() -> None:
    assert is_compatible("1.0.0", "1.9.4")
    assert not is_compatible("1.0.0", "2.0.0")


# ---------------------------------------------------------------------------
# Registry validation
# ---------------------------------------------------------------------------


def test_valid_envelope_has_no_errors() -> None:
    assert validate_envelope(_raw_envelope()) == []


def test_missing_required_field() -> None:
    raw = _raw_envelope()
    del raw["sequence_number"]
    assert validate_envelope(raw) == ["/sequence_number: required"]


@pytest.mark.parametrize("version", ["1.0", "v1.0.0", "1.0.0-beta"])
def test_malformed_schema_version_is_rejected(version: str) -> None:
    errors = validate_envelope(_raw_envelope(schema_version=version))
    assert len(errors) == 1
    assert errors[0].startswith("/schema_version:")


def test_unknown_type_is_rejected() -> None:
    errors = validate_envelope(_raw_envelope(type="SOMETHING_ELSE"))
    assert len(errors) == 1
    assert errors[0].startswith("/type:")


def test_payload_is_validated_against_its_type() -> None:
    errors = validate_envelope(_raw_envelope(data={"chunk": 5}))
    assert "/data/chunk: expected string" in errors
    assert "/data/chunk_index: required" in errors


def test_state_delta_operations_are_checked() -> None:
    raw = _raw_envelope(
        type="STATE_DELTA",
        data={"version": 1, "operations": [{"op": "explode", "path": "/x"}]},
    )
    errors = validate_envelope(raw)
    assert len(errors) == 1
    assert errors[0].startswith("/data/operations/0/op:")


def test_unknown_fields_are_allowed() -> None:
    raw = _raw_envelope(trace="abc", data={"chunk": "hi", "chunk_index": 0, "emphasis": "strong"})
    assert validate_envelope(raw) == []


def test_registry_register_get_list() -> None:
    registry = SchemaRegistry()
    schema = SchemaDescriptor(required=("name",), fields={"name": FieldSpec("string")})
    registry.register("thing", schema)

    assert registry.get("thing") is schema
    assert registry.get("missing") is None
    assert registry.list() == [("thing", schema)]
    assert registry.validate("thing", {"name": 3}) == ["/name: expected string"]
    with pytest.raises(KeyError):
        registry.validate("missing", {})


def test_default_registry_covers_every_event_type() -> None:
    registry = default_registry()
    assert registry.get(ENVELOPE) is not None
    for event_type in EventType:
        assert registry.get(event_type) is not None, event_type


# ---------------------------------------------------------------------------
# Forward compatibility
# ---------------------------------------------------------------------------


def test_unknown_fields_survive_decode_encode() -> None:
    raw = _raw_envelope(trace="abc", data={"chunk": "hi", "chunk_index": 0, "emphasis": "strong"})
    envelope = EventEnvelope.model_validate(raw)

    out = envelope.to_dict()
    assert out["trace"] == "abc"
    assert out["data"]["emphasis"] == "strong"

    payload = parse_payload(envelope)
    assert isinstance(payload, TextContent)
    assert payload.model_dump()["emphasis"] == "strong"


def test_preserve_unknown_fields() -> None:
    assert preserve_unknown_fields({"a": 1, "b": 2, "z": 3}, {"a", "b"}) == {"a": 1, "b": 2, "extensions": {"z": 3}}
    assert preserve_unknown_fields({"a": 1}, ["a"]) == {"a": 1}


def test_extract_data() -> None:
    assert extract_data(version_type({"x": 1})) == {"x": 1}
    assert extract_data({"version": "1.0.0", "timestamp": 0, "data": [1, 2]}) == [1, 2]
    assert extract_data({"version": "1.0.0", "data": "x"}) == "x"
    assert extract_data({"x": 1}) == {"x": 1}
    assert extract_data(None) is None


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


def test_migrate_same_version_is_noop() -> None:
    value = version_type({"a": 1}, "1.0.0")
    assert SchemaMigrator().migrate("T", value, "1.0.0") is value


def test_migrate_unversioned_wraps_at_target() -> None:
    result = SchemaMigrator().migrate("T", {"a": 1}, "1.2.0")
    assert result.version == "1.2.0"
    assert result.data == {"a": 1}


def test_migrate_follows_shortest_chain_and_keeps_extensions() -> None:
    migrator = SchemaMigrator()
    migrator.register_migration("T", "1.0.0", "1.1.0", lambda d: {**d, "b": 2})
    migrator.register_migration("T", "1.1.0", "1.2.0", lambda d: {**d, "c": 3})

    value = VersionedValue[dict](version="1.0.0", data={"a": 1}, extensions={"future": True})
    result = migrator.migrate("T", value, "1.2.0")

    assert result.version == "1.2.0"
    assert result.data == {"a": 1, "b": 2, "c": 3}
    assert result.extensions == {"future": True}


def test_migrate_without_chain_relabels() -> None:
    value = version_type({"a": 1}, "1.0.0")
    result = SchemaMigrator().migrate("T", value, "1.3.0")
    assert result.version == "1.3.0"
    assert result.data == {"a": 1}


def test_migrate_major_mismatch_raises_incompatible() -> None:
    with pytest.raises(SchemaIncompatibleError) as exc_info:
        SchemaMigrator().migrate("T", version_type({"a": 1}, "1.0.0"), "2.0.0")
    assert exc_info.value.current == "1.0.0"
    assert exc_info.value.target == "2.0.0"


def test_failing_migration_is_wrapped() -> None:
    migrator = SchemaMigrator()
    migrator.register_migration("T", "1.0.0", "1.1.0", lambda d: d["missing"])

    with pytest.raises(MigrationError):
        migrator.migrate("T", version_type({}, "1.0.0"), "1.1.0")


def test_migrate_envelope_by_type() -> None:
    migrator = SchemaMigrator()
    migrator.register_migration(EventType.TEXT_CONTENT, "1.0.0", "1.1.0", lambda d: {**d, "style": "plain"})
    envelope = EventEnvelope.model_validate(_raw_envelope())

    migrated = migrator.migrate_envelope(envelope, "1.1.0")

    assert migrated.schema_version == "1.1.0"
    assert migrated.data["style"] == "plain"
    assert migrated.event_id == envelope.event_id
