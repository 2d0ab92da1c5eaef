"""In-process stream registry.

Tracks the active stream of every session so an ``/interrupt`` call or a
shutdown can cancel it.  Ephemeral -- empty on process restart.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from mirastream.stream_runtime.context import ActiveStream


class ShuttingDownError(RuntimeError):
    """Raised when attempting to register a stream during shutdown."""


class StreamRegistry:
    """Registry of currently running streams, at most one per session.

    Registering a new stream for a session that still has one running
    interrupts the older stream; only the newest is reachable afterwards.

    ``wait_until_drained`` blocks until every stream has been unregistered,
    for graceful shutdown.
    """

    def __init__(self) -> None:
        self._streams: dict[str, ActiveStream] = {}
        self._drain_event = asyncio.Event()
        self._drain_event.set()
        self._shutting_down = False

    # -- Mutation --------------------------------------------------------------

    def register(self, stream: ActiveStream) -> None:
        """Register *stream*.  Raises ``ShuttingDownError`` if shutting down."""
        if self._shutting_down:
            raise ShuttingDownError
        previous = self._streams.get(stream.session_id)
        if previous is not None and previous.stream_key != stream.stream_key:
            previous.interrupt()
            logger.info("Registry: superseded stream {} of session {}", previous.stream_key, stream.session_id)
        logger.debug("Registry: register stream {} (session={})", stream.stream_key, stream.session_id)
        self._streams[stream.session_id] = stream
        self._drain_event.clear()

    def unregister(self, stream: ActiveStream) -> bool:
        """Remove *stream* if it is still the session's current one."""
        current = self._streams.get(stream.session_id)
        removed = current is not None and current.stream_key == stream.stream_key
        if removed:
            del self._streams[stream.session_id]
            logger.debug("Registry: unregister stream {}", stream.stream_key)
        if not self._streams:
            self._drain_event.set()
        return removed

    # -- Query -----------------------------------------------------------------

    def get(self, session_id: str) -> ActiveStream | None:
        return self._streams.get(session_id)

    def all_streams(self) -> list[ActiveStream]:
        return list(self._streams.values())

    @property
    def active_count(self) -> int:
        return len(self._streams)

    # -- Control ---------------------------------------------------------------

    def interrupt(self, session_id: str) -> bool:
        """Cancel the session's active stream.  Idempotent.

        Returns ``True`` only when this call set the cancel flag.
        """
        stream = self._streams.get(session_id)
        if stream is None:
            return False
        interrupted = stream.interrupt()
        if interrupted:
            logger.info("Registry: interrupted stream {} of session {}", stream.stream_key, session_id)
        return interrupted

    def interrupt_all(self) -> int:
        """Cancel every active stream.  Returns how many were newly cancelled."""
        count = 0
        for stream in self._streams.values():
            if stream.interrupt():
                count += 1
                logger.info("Registry: interrupted stream {} of session {}", stream.stream_key, stream.session_id)
        return count

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Refuse new registrations from now on."""
        self._shutting_down = True
        logger.info("Registry: shutdown initiated, refusing new streams")
        if not self._streams:
            self._drain_event.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until no stream is registered.

        Returns ``False`` if *timeout* expired with streams still active.
        """
        if not self._streams:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry: drain timed out after {}s with {} streams still active",
                timeout,
                len(self._streams),
            )
            return False
        else:
            return True
