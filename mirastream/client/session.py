"""Long-lived client session.

A ``StreamingSession`` sends one request at a time to the stream runtime and
turns the envelopes it gets back into callbacks::

    ConnectionManager -> schema check -> SequencingBuffer -> dispatch
                                                             |
                         InterruptController <- STATE_DELTA -+- TEXT_CONTENT -> ContentReveal
                         StateSynchronizer   <---------------+

The session owns the interrupt controller, the synchroniser and the schema
migrator for its whole life; the sequencing buffer and the connection are
created fresh for every request.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from mirastream.client.connection import ConnectionManager, ConnectionOptions
from mirastream.client.interrupt import ContentReveal, InterruptController, InterruptOutcome
from mirastream.client.sync import StateSynchronizer, create_versioned_state
from mirastream.stream_runtime.models.api import StreamRequest
from mirastream.stream_runtime.models.enums import ConflictPolicy, EventType, PatchOpType
from mirastream.stream_runtime.models.events import (
    DEFAULT_SCHEMA_VERSION,
    EventEnvelope,
    PatchOperation,
    ResponseComplete,
    parse_payload,
)
from mirastream.stream_runtime.models.state import Assessment, ConversationState, ToolCallData
from mirastream.stream_runtime.protocol.patch import PatchError
from mirastream.stream_runtime.protocol.schema import (
    MigrationError,
    SchemaIncompatibleError,
    SchemaMigrator,
    is_compatible,
)
from mirastream.stream_runtime.protocol.sequencing import SequencingBuffer

GENERIC_FAILURE = "Something went wrong. Please try again."
CONFIDENCE_PATH = "/confidenceInUser"


@dataclass
class StreamCallbacks:
    """Hooks invoked by ``StreamingSession``.  All optional and synchronous."""

    on_text: Callable[[int, str], None] | None = None
    """``(stream_id, text)`` as text is revealed; never past an interrupt."""

    on_confidence: Callable[[int], None] | None = None
    on_state: Callable[[dict[str, Any]], None] | None = None
    on_complete: Callable[[ResponseComplete], None] | None = None
    on_error: Callable[[str], None] | None = None
    """Called at most once per stream, with a generic message."""

    on_incompatible: Callable[[EventEnvelope, SchemaIncompatibleError], None] | None = None
    on_interrupt: Callable[[InterruptOutcome], None] | None = None


class StreamingSession:
    """One conversation with the stream runtime.

    Streamed text is revealed ``reveal_chars`` characters every
    ``reveal_interval`` seconds (``0`` reveals whatever has arrived at once).
    A stream counts as active until its text is fully revealed.
    """

    def __init__(
        self,
        base_url: str,
        session_id: str,
        callbacks: StreamCallbacks | None = None,
        *,
        state: ConversationState | None = None,
        options: ConnectionOptions | None = None,
        client: httpx.AsyncClient | None = None,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        conflict_policy: ConflictPolicy = ConflictPolicy.LAST_WRITER_WINS,
        migrator: SchemaMigrator | None = None,
        reveal_chars: int = 0,
        reveal_interval: float = 0.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.callbacks = callbacks or StreamCallbacks()
        self.options = options or ConnectionOptions()
        self.schema_version = schema_version
        self.conflict_policy = conflict_policy
        self.migrator = migrator or SchemaMigrator()
        self.reveal_chars = reveal_chars
        self.reveal_interval = reveal_interval

        initial = state or ConversationState()
        self.sync = StateSynchronizer(initial.to_payload())
        self.interrupts = InterruptController(initial.confidence_in_user, on_confidence=self._confidence_changed)

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.options.timeout)
        self._connection: ConnectionManager | None = None
        self._driver: asyncio.Task[None] | None = None
        self._failed: set[int] = set()
        self._wake: dict[int, asyncio.Event] = {}

    # -- Properties ------------------------------------------------------------

    @property
    def stream_url(self) -> str:
        return f"{self.base_url}/api/sessions/{self.session_id}/stream"

    @property
    def interrupt_url(self) -> str:
        return f"{self.base_url}/api/sessions/{self.session_id}/interrupt"

    @property
    def state(self) -> ConversationState:
        return ConversationState.model_validate(self.sync.local.payload)

    @property
    def is_streaming(self) -> bool:
        return self._driver is not None and not self._driver.done()

    def reveal_for(self, stream_id: int) -> ContentReveal:
        return self.interrupts.reveal_for(stream_id)

    # -- Requests --------------------------------------------------------------

    async def send(
        self,
        user_input: str | None = None,
        *,
        tool_data: ToolCallData | None = None,
        assessment: Assessment | None = None,
    ) -> int:
        """Start a stream for one request and return its stream ordinal.

        A stream still running is aborted first.  Use ``wait()`` to block
        until the new one ends.
        """
        if self._connection is not None:
            self._connection.abort()

        # The request carries the full local state, so it becomes the base
        # the server's STATE_DELTA operations are relative to.
        if self.sync.pending:
            self.sync.confirm_server_update(self.sync.local)

        stream_id = self.interrupts.start_stream()
        buffer = SequencingBuffer()
        request = StreamRequest(
            user_input=user_input,
            mira_state=self.state,
            assessment=assessment,
            tool_data=tool_data,
            state_version=self.sync.server.version,
        )

        connection = ConnectionManager(
            self.stream_url,
            on_event=lambda envelope: self._receive(stream_id, buffer, envelope),
            on_error=lambda message: self._fail(stream_id, message),
            options=self.options,
            client=self._client,
            json=request.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        self._connection = connection
        self._driver = asyncio.create_task(self._drive(stream_id, connection, buffer))
        logger.debug("Session {}: stream {} started", self.session_id, stream_id)
        return stream_id

    async def wait(self) -> None:
        if self._driver is not None:
            await asyncio.wait([self._driver])

    async def interrupt(self) -> InterruptOutcome | None:
        """Interrupt the current stream.

        The local effects (block, freeze, penalty, abort) all happen before
        the first ``await``; telling the server is best effort.
        """
        outcome = self.interrupts.interrupt()
        if outcome is None:
            return None
        if self._connection is not None:
            self._connection.abort()
        self.sync.optimistic_update(
            [PatchOperation(op=PatchOpType.REPLACE, path=CONFIDENCE_PATH, value=outcome.confidence)]
        )
        if self.callbacks.on_interrupt is not None:
            self.callbacks.on_interrupt(outcome)

        try:
            await self._client.post(self.interrupt_url)
        except httpx.HTTPError as exc:
            logger.warning("Session {}: server interrupt failed: {}", self.session_id, exc)
        return outcome

    async def aclose(self) -> None:
        if self._connection is not None:
            self._connection.abort()
        await self.wait()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> StreamingSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- Internals -------------------------------------------------------------

    async def _drive(self, stream_id: int, connection: ConnectionManager, buffer: SequencingBuffer) -> None:
        wake = self._wake[stream_id] = asyncio.Event()
        done = asyncio.Event()
        revealer = asyncio.create_task(self._reveal(stream_id, wake, done))
        try:
            connection.start()
            await connection.wait()
            if not (connection.aborted or self.interrupts.should_block(stream_id)):
                leftovers = buffer.flush()
                if leftovers:
                    logger.debug("Session {}: flushing {} buffered envelopes", self.session_id, len(leftovers))
                for envelope in leftovers:
                    self._dispatch(stream_id, envelope)
        finally:
            done.set()
            wake.set()
            if connection.aborted:
                revealer.cancel()
            await asyncio.wait([revealer])
            self._wake.pop(stream_id, None)
            self.interrupts.end_stream(stream_id)

    async def _reveal(self, stream_id: int, wake: asyncio.Event, done: asyncio.Event) -> None:
        """Hand revealed text to ``on_text`` until the stream ends or freezes."""
        reveal = self.reveal_for(stream_id)
        while True:
            step = reveal.advance(self.reveal_chars or reveal.pending)
            if step:
                if self.callbacks.on_text is not None:
                    self.callbacks.on_text(stream_id, step)
                if self.reveal_interval:
                    await asyncio.sleep(self.reveal_interval)
                continue
            if reveal.frozen or done.is_set():
                return
            wake.clear()
            await wake.wait()

    def _receive(self, stream_id: int, buffer: SequencingBuffer, envelope: EventEnvelope) -> None:
        if self.interrupts.should_block(stream_id):
            return

        if not is_compatible(envelope.schema_version, self.schema_version):
            exc = SchemaIncompatibleError(envelope.schema_version, self.schema_version)
            logger.warning("Session {}: dropping {} ({})", self.session_id, envelope.event_id, exc)
            if self.callbacks.on_incompatible is not None:
                self.callbacks.on_incompatible(envelope, exc)
            return
        if envelope.schema_version != self.schema_version:
            try:
                envelope = self.migrator.migrate_envelope(envelope, self.schema_version)
            except MigrationError as exc:
                logger.warning("Session {}: dropping {} ({})", self.session_id, envelope.event_id, exc)
                return

        for ready in buffer.process(envelope):
            self._dispatch(stream_id, ready)

    def _dispatch(self, stream_id: int, envelope: EventEnvelope) -> None:
        if self.interrupts.should_block(stream_id):
            return
        try:
            payload = parse_payload(envelope)
        except ValidationError as exc:
            logger.warning("Session {}: bad {} payload: {}", self.session_id, envelope.type, exc.error_count())
            return

        match envelope.type:
            case EventType.TEXT_CONTENT:
                if self.reveal_for(stream_id).append(payload.chunk) and stream_id in self._wake:
                    self._wake[stream_id].set()
            case EventType.STATE_DELTA:
                self._apply_delta(stream_id, envelope)
            case EventType.RAPPORT_UPDATE:
                self.interrupts.apply_confidence(stream_id, payload.confidence)
            case EventType.RESPONSE_COMPLETE:
                remote = create_versioned_state(payload.updated_state, self.sync.server.version)
                if self.sync.sync_with_server(remote).has_conflict:
                    self.sync.resolve_conflict(remote, self.conflict_policy)
                if self.callbacks.on_complete is not None:
                    self.callbacks.on_complete(payload)
            case EventType.ERROR:
                logger.error("Session {}: stream error {}: {}", self.session_id, payload.code, payload.message)
                self._fail(stream_id, payload.message)
            case _:
                logger.debug("Session {}: ignoring {}", self.session_id, envelope.type)

    def _apply_delta(self, stream_id: int, envelope: EventEnvelope) -> None:
        try:
            result = self.sync.apply_remote_delta(envelope.data)
        except (PatchError, ValidationError) as exc:
            logger.warning("Session {}: cannot apply STATE_DELTA {}: {}", self.session_id, envelope.event_id, exc)
            return
        if result.has_conflict:
            self.sync.resolve_conflict(result.remote, self.conflict_policy)

        local = self.sync.local.payload
        paths = {op.get("path") for op in envelope.data.get("operations", [])}
        if CONFIDENCE_PATH in paths and "confidenceInUser" in local:
            self.interrupts.apply_confidence(stream_id, local["confidenceInUser"])
        if self.callbacks.on_state is not None:
            self.callbacks.on_state(local)

    def _fail(self, stream_id: int, message: str) -> None:
        if stream_id in self._failed or self.interrupts.should_block(stream_id):
            return
        self._failed.add(stream_id)
        logger.debug("Session {}: stream {} failed: {}", self.session_id, stream_id, message)
        if self.callbacks.on_error is not None:
            self.callbacks.on_error(GENERIC_FAILURE)

    def _confidence_changed(self, confidence: int) -> None:
        if self.callbacks.on_confidence is not None:
            self.callbacks.on_confidence(confidence)
