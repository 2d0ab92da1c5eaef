"""Protocol event models.

Defines the event envelope and one payload model per ``EventType``.  The
envelope keeps ``data`` as a plain dict on the wire; ``parse_payload`` turns
it into the typed variant selected by ``envelope.type``.

Both envelopes and payloads accept unknown keys and keep them, so fields
added by a newer producer survive a decode -> encode cycle through an older
consumer.
"""

from __future__ import annotations

import json
import time
from typing import Any, assert_never

from pydantic import BaseModel, ConfigDict, Field

from mirastream.stream_runtime.models.enums import ErrorCode, EventType, PatchOpType

DEFAULT_SCHEMA_VERSION = "1.0.0"


def now_ms() -> float:
    """Producer-side timestamp (epoch milliseconds).  Informational only."""
    return time.time() * 1000


class EventEnvelope(BaseModel):
    """Wire-format event envelope sent over SSE.  Immutable once emitted."""

    model_config = ConfigDict(frozen=True, extra="allow")

    event_id: str
    schema_version: str = DEFAULT_SCHEMA_VERSION
    type: EventType
    timestamp: float = Field(default_factory=now_ms)
    sequence_number: int = Field(ge=0)
    parent_event_id: str | None = None
    context: dict[str, Any] | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe dict with unset optional keys left out."""
        dumped = self.model_dump(mode="json")
        for key in ("parent_event_id", "context"):
            if dumped.get(key) is None:
                dumped.pop(key, None)
        return dumped

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class TextMessageStart(Payload):
    message_id: str


class TextContent(Payload):
    chunk: str
    chunk_index: int


class TextMessageEnd(Payload):
    total_chunks: int


class PatchOperation(Payload):
    """One RFC 6902 operation.  ``value`` may legitimately be ``None``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    op: PatchOpType
    path: str
    value: Any = None
    from_: str | None = Field(default=None, alias="from")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"op": self.op.value, "path": self.path}
        if "value" in self.model_fields_set or self.op in (PatchOpType.ADD, PatchOpType.REPLACE, PatchOpType.TEST):
            out["value"] = self.value
        if self.from_ is not None:
            out["from"] = self.from_
        return out


class StateDelta(Payload):
    version: int
    timestamp: float = Field(default_factory=now_ms)
    operations: list[PatchOperation] = Field(default_factory=list)
    full_state: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": self.version,
            "timestamp": self.timestamp,
            "operations": [op.to_dict() for op in self.operations],
        }
        if self.full_state is not None:
            out["full_state"] = self.full_state
        return out


class RapportUpdate(Payload):
    confidence: int
    formatted_bar: str


class AnalysisMetrics(Payload):
    thoughtfulness: float = 0
    adventurousness: float = 0
    engagement: float = 0
    curiosity: float = 0
    superficiality: float = 0


class AnalysisComplete(Payload):
    reasoning: str
    metrics: AnalysisMetrics
    confidence_delta: float
    suggested_creature_mood: str | None = None


class ResponseComplete(Payload):
    updated_state: dict[str, Any]
    response: dict[str, Any] = Field(default_factory=dict)
    analysis: dict[str, Any] | None = None


class ToolCallStart(Payload):
    tool_call_id: str
    action: str


class ToolCallResult(Payload):
    tool_call_id: str
    status: str = "success"
    result: Any = None
    error: str | None = None


class ToolCallEnd(Payload):
    tool_call_id: str


class ErrorPayload(Payload):
    code: ErrorCode | str
    message: str
    recoverable: bool = False


class Ack(Payload):
    acked_event_id: str


EventPayload = (
    TextMessageStart
    | TextContent
    | TextMessageEnd
    | ResponseComplete
    | StateDelta
    | RapportUpdate
    | ToolCallStart
    | ToolCallResult
    | ToolCallEnd
    | ErrorPayload
    | Ack
    | AnalysisComplete
)


def payload_model(event_type: EventType) -> type[Payload]:
    """Return the payload model for *event_type*."""
    match event_type:
        case EventType.TEXT_MESSAGE_START:
            return TextMessageStart
        case EventType.TEXT_CONTENT:
            return TextContent
        case EventType.TEXT_MESSAGE_END:
            return TextMessageEnd
        case EventType.RESPONSE_COMPLETE:
            return ResponseComplete
        case EventType.STATE_DELTA:
            return StateDelta
        case EventType.RAPPORT_UPDATE:
            return RapportUpdate
        case EventType.TOOL_CALL_START:
            return ToolCallStart
        case EventType.TOOL_CALL_RESULT:
            return ToolCallResult
        case EventType.TOOL_CALL_END:
            return ToolCallEnd
        case EventType.ERROR:
            return ErrorPayload
        case EventType.ACK:
            return Ack
        case EventType.ANALYSIS_COMPLETE:
            return AnalysisComplete
        case _:
            assert_never(event_type)


def parse_payload(envelope: EventEnvelope) -> EventPayload:
    """Validate ``envelope.data`` against the model for its type.

    Raises ``pydantic.ValidationError`` if the payload does not match.
    """
    return payload_model(envelope.type).model_validate(envelope.data)  # type: ignore[return-value]
