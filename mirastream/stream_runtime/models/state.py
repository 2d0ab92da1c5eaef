"""Conversation state carried by streams.

The JSON representation uses camelCase keys (``confidenceInUser``,
``userProfile`` ...) because STATE_DELTA patch paths address them directly.
Python code uses the snake_case attribute names.
"""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mirastream.stream_runtime.models.enums import Depth, InteractionType, Mood

CONFIDENCE_MIN = 0
CONFIDENCE_MAX = 100


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_confidence(value: float) -> int:
    """Clamp a confidence score into ``[0, 100]`` and round to an int."""
    return round(clamp(value, CONFIDENCE_MIN, CONFIDENCE_MAX))


class CamelModel(BaseModel):
    """Base model serialising to camelCase and accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserProfile(CamelModel):
    thoughtfulness: float = 50
    adventurousness: float = 50
    engagement: float = 50
    curiosity: float = 50
    superficiality: float = 50


class ToolCallData(CamelModel):
    action: str
    timestamp: float = Field(default_factory=lambda: time.time() * 1000)
    sequence_number: int = 0
    zoom_level: str | None = None


class InteractionMemory(CamelModel):
    timestamp: float
    type: InteractionType
    content: str
    duration: float = 0
    depth: Depth = Depth.MODERATE
    tool_data: ToolCallData | None = None


class ConversationState(CamelModel):
    """Full conversation state shared by producer and client."""

    confidence_in_user: int = 50
    user_profile: UserProfile = Field(default_factory=UserProfile)
    memories: list[InteractionMemory] = Field(default_factory=list)
    current_mood: Mood = Mood.TESTING
    has_found_kindred: bool = False
    response_indices: dict[str, int] = Field(default_factory=dict)

    def to_payload(self) -> dict:
        """Wire/patch representation (camelCase, JSON-safe)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Assessment(CamelModel):
    """Client-side assessment of the user's message."""

    type: InteractionType = InteractionType.RESPONSE
    depth: Depth = Depth.MODERATE
    confidence_delta: float = 0
