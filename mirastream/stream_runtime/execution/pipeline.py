"""Response pipeline -- one request in, one ordered envelope stream out.

``run_stream`` is an async generator.  Every outcome, including failures,
is reported in-band as envelopes; the generator itself only raises on
cancellation.

Successful text exchange::

    TEXT_MESSAGE_START
    TEXT_CONTENT*            (rapport bar, then reasoning sentences)
    TEXT_MESSAGE_END
    STATE_DELTA              (version = request.state_version + 1)
    [ANALYSIS_COMPLETE]      (settings.emit_analysis_events)
    [RAPPORT_UPDATE]
    RESPONSE_COMPLETE

Tool-call exchange::

    STATE_DELTA
    RESPONSE_COMPLETE

Any failure ends the stream with a single ERROR envelope.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from loguru import logger

from mirastream.stream_runtime.execution.analysis import (
    AnalysisParseError,
    apply_analysis,
    apply_tool_call,
    parse_analysis,
    rapport_bar,
    record_interaction,
    split_sentences,
)
from mirastream.stream_runtime.models.enums import ErrorCode
from mirastream.stream_runtime.models.events import AnalysisComplete, ResponseComplete, StateDelta
from mirastream.stream_runtime.protocol.patch import diff_top_level

if TYPE_CHECKING:
    from mirastream.stream_runtime.execution.source import TextSource
    from mirastream.stream_runtime.models.api import StreamRequest
    from mirastream.stream_runtime.models.events import EventEnvelope
    from mirastream.stream_runtime.models.state import ConversationState
    from mirastream.stream_runtime.protocol.producer import StreamProducer
    from mirastream.stream_runtime.settings import MiraSettings

ANALYSIS_INSTRUCTIONS = (
    "Assess the user's message and reply with one JSON object only, with the keys "
    "confidenceDelta (-10..15), thoughtfulness, adventurousness, engagement, curiosity, "
    "superficiality (each 0..100) and reasoning (1-2 short sentences)."
)


class StreamCancelled(Exception):  # noqa: N818
    """Raised internally when the server-side cancel event is set."""


def build_prompt(request: StreamRequest) -> str:
    parts = [ANALYSIS_INSTRUCTIONS, "", f"User message: {request.user_input}"]
    if request.assessment is not None:
        parts.append(f"Client assessment: {request.assessment.type} / {request.assessment.depth}")
    return "\n".join(parts)


def _state_delta(before: ConversationState, after: ConversationState, version: int) -> StateDelta:
    return StateDelta(version=version, operations=diff_top_level(before.to_payload(), after.to_payload()))


async def run_stream(
    request: StreamRequest,
    *,
    producer: StreamProducer,
    source: TextSource | None,
    settings: MiraSettings,
    cancel: asyncio.Event | None = None,
    session_id: str = "-",
) -> AsyncIterator[EventEnvelope]:
    """Yield the envelopes answering *request*.

    Setting *cancel* stops the stream at the next chunk boundary without any
    further envelopes.
    """
    log = logger.bind(session=session_id, stream=uuid.uuid4().hex[:8])

    def check_cancel() -> None:
        if cancel is not None and cancel.is_set():
            raise StreamCancelled

    try:
        state = request.mira_state
        if state is None:
            yield producer.error(ErrorCode.MISSING_FIELDS, "Missing required field: miraState")
            return

        # -- Tool call: silent score change, no text ---------------------------
        if request.tool_data is not None and request.tool_data.action:
            updated = apply_tool_call(state, request.tool_data)
            log.info("Tool call {} -> confidence {}", request.tool_data.action, updated.confidence_in_user)
            yield producer.state_delta(_state_delta(state, updated, request.state_version + 1))
            check_cancel()
            yield producer.response_complete(
                ResponseComplete(
                    updated_state=updated.to_payload(),
                    response={"streaming": [], "text": "", "source": "tool_call"},
                )
            )
            return

        if not request.user_input:
            yield producer.error(ErrorCode.MISSING_INPUT, "Missing userInput or toolData")
            return

        if source is None:
            log.error("No text source configured (MIRA_MODEL is unset)")
            yield producer.error(ErrorCode.SERVER_CONFIG_ERROR, "Text generation is not configured")
            return

        # -- Analysis -----------------------------------------------------------
        fragments: list[str] = []
        async for fragment in source.stream(build_prompt(request), state.to_payload()):
            fragments.append(fragment)
            check_cancel()
        raw = "".join(fragments)

        try:
            analysis = parse_analysis(raw)
        except AnalysisParseError as exc:
            code = ErrorCode.JSON_PARSE_ERROR if exc.found_json else ErrorCode.INVALID_RESPONSE
            log.warning("Unusable analysis ({}): {}", code, exc)
            yield producer.error(code, str(exc))
            return

        updated = apply_analysis(state, analysis)
        log.debug(
            "Confidence {} -> {} (delta={})",
            state.confidence_in_user,
            updated.confidence_in_user,
            analysis.confidence_delta,
        )

        # -- Text ---------------------------------------------------------------
        sentences = split_sentences(analysis.reasoning)
        chunks = [rapport_bar(updated.confidence_in_user), *sentences]
        delay = settings.chunk_delay_ms / 1000

        start = producer.message_start(f"msg_analysis_{uuid.uuid4().hex[:12]}")
        yield start
        for index, chunk in enumerate(chunks):
            if index and delay:
                await asyncio.sleep(delay)
            check_cancel()
            yield producer.content(start, chunk, index)
        check_cancel()
        yield producer.message_end(start, len(chunks))

        # -- State --------------------------------------------------------------
        final = record_interaction(updated, request.user_input, request.assessment)
        check_cancel()
        yield producer.state_delta(_state_delta(state, final, request.state_version + 1))

        analysis_payload = AnalysisComplete(
            reasoning=analysis.reasoning,
            metrics=analysis.metrics(),
            confidence_delta=analysis.confidence_delta,
            suggested_creature_mood=analysis.suggested_creature_mood,
        )
        if settings.emit_analysis_events:
            yield producer.analysis_complete(analysis_payload)
            yield producer.rapport_update(final.confidence_in_user, chunks[0])

        check_cancel()
        yield producer.response_complete(
            ResponseComplete(
                updated_state=final.to_payload(),
                response={"streaming": sentences, "text": " ".join(sentences), "source": "ai"},
                analysis=analysis_payload.model_dump(mode="json", exclude_none=True),
            )
        )
        log.info("Stream complete ({} envelopes)", producer.emitted_count)

    except StreamCancelled:
        log.info("Stream cancelled after {} envelopes", producer.emitted_count)
    except Exception as exc:
        log.exception("Stream failed")
        yield producer.error(ErrorCode.STREAM_ERROR, str(exc) or type(exc).__name__)
