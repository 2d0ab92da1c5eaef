"""Data models for the stream runtime."""

from mirastream.stream_runtime.models.api import InterruptResponse, StreamRequest
from mirastream.stream_runtime.models.enums import (
    ConflictPolicy,
    Depth,
    ErrorCode,
    EventType,
    InteractionType,
    Mood,
    PatchOpType,
)
from mirastream.stream_runtime.models.events import (
    Ack,
    AnalysisComplete,
    AnalysisMetrics,
    ErrorPayload,
    EventEnvelope,
    EventPayload,
    PatchOperation,
    RapportUpdate,
    ResponseComplete,
    StateDelta,
    TextContent,
    TextMessageEnd,
    TextMessageStart,
    ToolCallEnd,
    ToolCallResult,
    ToolCallStart,
    parse_payload,
)
from mirastream.stream_runtime.models.state import (
    Assessment,
    ConversationState,
    InteractionMemory,
    ToolCallData,
    UserProfile,
)

__all__ = [
    # Events
    "Ack",
    "AnalysisComplete",
    "AnalysisMetrics",
    # State
    "Assessment",
    # Enums
    "ConflictPolicy",
    "ConversationState",
    "Depth",
    "ErrorCode",
    "ErrorPayload",
    "EventEnvelope",
    "EventPayload",
    "EventType",
    "InteractionMemory",
    "InteractionType",
    # API schemas
    "InterruptResponse",
    "Mood",
    "PatchOpType",
    "PatchOperation",
    "RapportUpdate",
    "ResponseComplete",
    "StateDelta",
    "StreamRequest",
    "TextContent",
    "TextMessageEnd",
    "TextMessageStart",
    "ToolCallData",
    "ToolCallEnd",
    "ToolCallResult",
    "ToolCallStart",
    "UserProfile",
    "parse_payload",
]
