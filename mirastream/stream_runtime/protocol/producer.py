"""Stream producer -- assigns sequence numbers and builds envelopes.

One ``StreamProducer`` per request/response exchange.  Sequence numbers come
from an explicit ``SequenceCounter`` owned by the producer, never from
module state, so concurrent streams cannot interfere.
"""

from __future__ import annotations

import uuid
from typing import Any

from mirastream.stream_runtime.models.enums import ErrorCode, EventType
from mirastream.stream_runtime.models.events import (
    DEFAULT_SCHEMA_VERSION,
    AnalysisComplete,
    ErrorPayload,
    EventEnvelope,
    RapportUpdate,
    ResponseComplete,
    StateDelta,
    TextContent,
    TextMessageEnd,
    TextMessageStart,
    now_ms,
)


class ProtocolError(RuntimeError):
    """Raised when an envelope would violate the stream invariants."""


class SequenceCounter:
    """Monotonic per-stream counter starting at 0."""

    def __init__(self, start: int = 0) -> None:
        self._next = start

    def next(self) -> int:
        value = self._next
        self._next += 1
        return value

    @property
    def issued(self) -> int:
        """Number of sequence numbers handed out so far."""
        return self._next


def generate_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class StreamProducer:
    """Envelope factory for a single stream."""

    def __init__(
        self,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        counter: SequenceCounter | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.schema_version = schema_version
        self._counter = counter or SequenceCounter()
        self._context = context
        self._emitted: set[str] = set()

    @property
    def emitted_count(self) -> int:
        return self._counter.issued

    def emit(
        self,
        type_: EventType,
        data: dict[str, Any],
        *,
        parent_event_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> EventEnvelope:
        """Build the next envelope in this stream.

        Raises ``ProtocolError`` if *parent_event_id* was not emitted earlier
        by this producer.
        """
        if parent_event_id is not None and parent_event_id not in self._emitted:
            msg = f"parent_event_id {parent_event_id!r} does not reference an earlier envelope in this stream"
            raise ProtocolError(msg)

        envelope = EventEnvelope(
            event_id=generate_event_id(),
            schema_version=self.schema_version,
            type=type_,
            timestamp=now_ms(),
            sequence_number=self._counter.next(),
            parent_event_id=parent_event_id,
            context=context if context is not None else self._context,
            data=data,
        )
        self._emitted.add(envelope.event_id)
        return envelope

    # -- Typed helpers ---------------------------------------------------------

    def message_start(self, message_id: str) -> EventEnvelope:
        return self.emit(EventType.TEXT_MESSAGE_START, TextMessageStart(message_id=message_id).model_dump())

    def content(self, start: EventEnvelope, chunk: str, chunk_index: int) -> EventEnvelope:
        return self.emit(
            EventType.TEXT_CONTENT,
            TextContent(chunk=chunk, chunk_index=chunk_index).model_dump(),
            parent_event_id=start.event_id,
        )

    def message_end(self, start: EventEnvelope, total_chunks: int) -> EventEnvelope:
        return self.emit(
            EventType.TEXT_MESSAGE_END,
            TextMessageEnd(total_chunks=total_chunks).model_dump(),
            parent_event_id=start.event_id,
        )

    def state_delta(self, delta: StateDelta) -> EventEnvelope:
        return self.emit(EventType.STATE_DELTA, delta.to_dict())

    def rapport_update(self, confidence: int, formatted_bar: str) -> EventEnvelope:
        payload = RapportUpdate(confidence=confidence, formatted_bar=formatted_bar)
        return self.emit(EventType.RAPPORT_UPDATE, payload.model_dump())

    def analysis_complete(self, analysis: AnalysisComplete) -> EventEnvelope:
        return self.emit(EventType.ANALYSIS_COMPLETE, analysis.model_dump(mode="json", exclude_none=True))

    def response_complete(self, complete: ResponseComplete) -> EventEnvelope:
        return self.emit(EventType.RESPONSE_COMPLETE, complete.model_dump(mode="json", exclude_none=True))

    def error(self, code: ErrorCode, message: str, *, recoverable: bool = False) -> EventEnvelope:
        payload = ErrorPayload(code=code, message=message, recoverable=recoverable)
        return self.emit(EventType.ERROR, payload.model_dump(mode="json"))
