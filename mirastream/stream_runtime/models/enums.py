"""Shared enumerations used across the stream runtime and client."""

from __future__ import annotations

from enum import StrEnum

# -- Events ------------------------------------------------------------------


class EventType(StrEnum):
    """Closed set of envelope types.  Acts as the payload discriminator."""

    # Text message
    TEXT_MESSAGE_START = "TEXT_MESSAGE_START"
    TEXT_CONTENT = "TEXT_CONTENT"
    TEXT_MESSAGE_END = "TEXT_MESSAGE_END"

    # Lifecycle
    RESPONSE_COMPLETE = "RESPONSE_COMPLETE"

    # State
    STATE_DELTA = "STATE_DELTA"
    RAPPORT_UPDATE = "RAPPORT_UPDATE"

    # Tool
    TOOL_CALL_START = "TOOL_CALL_START"
    TOOL_CALL_RESULT = "TOOL_CALL_RESULT"
    TOOL_CALL_END = "TOOL_CALL_END"

    # Control
    ERROR = "ERROR"
    ACK = "ACK"
    ANALYSIS_COMPLETE = "ANALYSIS_COMPLETE"


class PatchOpType(StrEnum):
    """RFC 6902 operation vocabulary used in STATE_DELTA payloads."""

    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"
    MOVE = "move"
    COPY = "copy"
    TEST = "test"


class ErrorCode(StrEnum):
    """Codes carried by ERROR envelopes.  All are fatal for their stream."""

    MISSING_FIELDS = "MISSING_FIELDS"
    MISSING_INPUT = "MISSING_INPUT"
    SERVER_CONFIG_ERROR = "SERVER_CONFIG_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    JSON_PARSE_ERROR = "JSON_PARSE_ERROR"
    STREAM_ERROR = "STREAM_ERROR"


# -- Conversation state ------------------------------------------------------


class Mood(StrEnum):
    CURIOUS = "curious"
    VULNERABLE = "vulnerable"
    TESTING = "testing"
    EXCITED = "excited"
    DEFENSIVE = "defensive"


class InteractionType(StrEnum):
    RESPONSE = "response"
    QUESTION = "question"
    TOOL_CALL = "tool_call"


class Depth(StrEnum):
    SURFACE = "surface"
    MODERATE = "moderate"
    DEEP = "deep"


# -- Client ------------------------------------------------------------------


class ConflictPolicy(StrEnum):
    """How the caller resolves a local/remote version conflict."""

    LAST_WRITER_WINS = "last_writer_wins"
    MERGE = "merge"
    REJECT = "reject"
