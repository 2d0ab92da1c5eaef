"""Request/response schemas for the HTTP API."""

from __future__ import annotations

from pydantic import Field

from mirastream.stream_runtime.models.state import Assessment, CamelModel, ConversationState, ToolCallData


class StreamRequest(CamelModel):
    """Body of ``POST /api/sessions/{session_id}/stream``.

    ``mira_state`` is optional at the schema level so that a missing state is
    reported in-band as a ``MISSING_FIELDS`` ERROR envelope rather than as an
    HTTP 422.
    """

    user_input: str | None = None
    mira_state: ConversationState | None = None
    assessment: Assessment | None = None
    tool_data: ToolCallData | None = None
    state_version: int = Field(0, ge=0, description="Version of mira_state as known by the client.")


class InterruptResponse(CamelModel):
    session_id: str
    interrupted: bool
