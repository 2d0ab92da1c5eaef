"""Turning text-generation output into state changes.

The text source is asked for a single JSON object.  This module extracts it
from the concatenated fragments, validates it into ``Analysis`` and derives
the next ``ConversationState``.  Confidence always stays in ``[0, 100]``.
"""

from __future__ import annotations

import json
import re
import time

from pydantic import Field, ValidationError, field_validator

from mirastream.stream_runtime.models.enums import Depth, InteractionType, Mood
from mirastream.stream_runtime.models.events import AnalysisMetrics
from mirastream.stream_runtime.models.state import (
    Assessment,
    CamelModel,
    ConversationState,
    InteractionMemory,
    ToolCallData,
    clamp,
    clamp_confidence,
)

DELTA_MIN = -10
DELTA_MAX = 15

TOOL_SCORES: dict[str, int] = {
    "zoom_in": 5,
    "zoom_out": 5,
}

_LEADING_PLUS = re.compile(r":\s*\+(?=\d)")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


class AnalysisParseError(ValueError):
    """The source output could not be turned into an ``Analysis``.

    ``found_json`` tells a missing object (``INVALID_RESPONSE``) apart from a
    malformed one (``JSON_PARSE_ERROR``).
    """

    def __init__(self, message: str, *, found_json: bool) -> None:
        super().__init__(message)
        self.found_json = found_json


class Analysis(CamelModel):
    """Validated analysis object produced by the text source."""

    confidence_delta: float = 0
    thoughtfulness: float = 50
    adventurousness: float = 50
    engagement: float = 50
    curiosity: float = 50
    superficiality: float = 50
    reasoning: str = Field("Analysis complete", min_length=1)
    suggested_creature_mood: str | None = Field(None, alias="suggested_creature_mood")

    @field_validator("confidence_delta")
    @classmethod
    def _clamp_delta(cls, v: float) -> float:
        return clamp(v, DELTA_MIN, DELTA_MAX)

    @field_validator("thoughtfulness", "adventurousness", "engagement", "curiosity", "superficiality")
    @classmethod
    def _clamp_metric(cls, v: float) -> float:
        return clamp(v, 0, 100)

    def metrics(self) -> AnalysisMetrics:
        return AnalysisMetrics(
            thoughtfulness=self.thoughtfulness,
            adventurousness=self.adventurousness,
            engagement=self.engagement,
            curiosity=self.curiosity,
            superficiality=self.superficiality,
        )


def extract_json_object(text: str) -> str | None:
    """Return the first balanced top-level ``{...}`` span in *text*.

    Braces inside JSON strings are ignored.  ``None`` if no complete object.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        # Unbalanced from this brace; nothing later can close it either.
        return None
    return None


def parse_analysis(text: str) -> Analysis:
    """Extract and validate the analysis object from raw source output."""
    span = extract_json_object(text)
    if span is None:
        msg = "Invalid response format: no JSON object found"
        raise AnalysisParseError(msg, found_json=False)

    cleaned = _LEADING_PLUS.sub(": ", span)
    try:
        raw = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        msg = f"Failed to parse response: {exc}"
        raise AnalysisParseError(msg, found_json=True) from exc

    try:
        return Analysis.model_validate(raw)
    except ValidationError as exc:
        msg = f"Failed to parse response: {exc.error_count()} invalid field(s)"
        raise AnalysisParseError(msg, found_json=True) from exc


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


def mood_for_confidence(confidence: float) -> Mood:
    if confidence < 34:
        return Mood.DEFENSIVE
    if confidence < 68:
        return Mood.TESTING
    return Mood.CURIOUS


def apply_analysis(state: ConversationState, analysis: Analysis) -> ConversationState:
    """Merge *analysis* into *state*: confidence, profile and mood."""
    confidence = clamp_confidence(state.confidence_in_user + analysis.confidence_delta)
    profile = state.user_profile.model_copy(update=analysis.metrics().model_dump())
    return state.model_copy(
        update={
            "confidence_in_user": confidence,
            "user_profile": profile,
            "current_mood": mood_for_confidence(confidence),
        }
    )


def record_interaction(state: ConversationState, user_input: str, assessment: Assessment | None) -> ConversationState:
    memory = InteractionMemory(
        timestamp=time.time() * 1000,
        type=assessment.type if assessment else InteractionType.RESPONSE,
        content=user_input,
        depth=assessment.depth if assessment else Depth.MODERATE,
    )
    return state.model_copy(update={"memories": [*state.memories, memory]})


def apply_tool_call(state: ConversationState, tool: ToolCallData) -> ConversationState:
    """Award the fixed score for *tool* and remember the call."""
    confidence = clamp_confidence(state.confidence_in_user + TOOL_SCORES.get(tool.action, 0))
    memory = InteractionMemory(
        timestamp=tool.timestamp,
        type=InteractionType.TOOL_CALL,
        content=tool.action,
        tool_data=tool,
    )
    return state.model_copy(update={"confidence_in_user": confidence, "memories": [*state.memories, memory]})


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def rapport_bar(confidence: float) -> str:
    """``[RAPPORT] [████░░...] 42%`` -- 20 cells, 5% each."""
    percent = clamp_confidence(confidence)
    filled = round(percent / 5)
    return f"[RAPPORT] [{'█' * filled}{'░' * (20 - filled)}] {percent}%\n"


def split_sentences(text: str) -> list[str]:
    return [s for s in _SENTENCE_END.split(text.strip()) if s]
