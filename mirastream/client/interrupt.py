"""User interrupts of an in-flight stream.

Every stream started by a session gets an ordinal.  Interrupting records
the ordinal *before* anything else happens, so callbacks of that stream
which are still in flight see it and stay silent.  The interrupted ordinal
stays blocked for one more stream cycle, long enough for late callbacks of
the old stream to arrive while the next one runs.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from mirastream.stream_runtime.models.state import clamp_confidence

PENALTY = 15


class ContentReveal:
    """Typewriter reveal of streamed text.

    Chunks are appended as they arrive and revealed a few characters at a
    time.  ``freeze()`` cuts the text at the revealed boundary; nothing
    appended or advanced afterwards becomes visible.
    """

    def __init__(self) -> None:
        self._text = ""
        self._revealed = 0
        self._frozen = False

    def append(self, chunk: str) -> bool:
        if self._frozen:
            return False
        self._text += chunk
        return True

    def advance(self, n: int = 1) -> str:
        """Reveal up to *n* more characters; return the newly visible text."""
        if self._frozen or n <= 0:
            return ""
        end = min(len(self._text), self._revealed + n)
        step = self._text[self._revealed : end]
        self._revealed = end
        return step

    def reveal_all(self) -> str:
        return self.advance(len(self._text) - self._revealed)

    def freeze(self) -> str:
        self._text = self._text[: self._revealed]
        self._frozen = True
        return self._text

    @property
    def visible(self) -> str:
        return self._text[: self._revealed]

    @property
    def pending(self) -> int:
        return len(self._text) - self._revealed

    @property
    def frozen(self) -> bool:
        return self._frozen


@dataclass(frozen=True)
class InterruptOutcome:
    stream_id: int
    previous_confidence: int
    confidence: int
    visible_text: str


class InterruptController:
    """Stream ordinals, interrupt bookkeeping and the confidence they guard.

    All methods are synchronous: the check that a stream is not blocked and
    the write it guards happen without an intervening ``await``.
    """

    def __init__(
        self,
        confidence: int = 50,
        *,
        penalty: int = PENALTY,
        on_confidence: Callable[[int], None] | None = None,
    ) -> None:
        self.confidence = clamp_confidence(confidence)
        self.penalty = penalty
        self._on_confidence = on_confidence
        self._ordinal = 0
        self._current: int | None = None
        self._interrupted: int | None = None
        self._retained: int | None = None
        self._reveals: dict[int, ContentReveal] = {}

    # -- Streams ---------------------------------------------------------------

    def start_stream(self) -> int:
        self._ordinal += 1
        self._retained = self._interrupted
        self._interrupted = None
        self._current = self._ordinal
        keep = {self._current, self._retained}
        self._reveals = {sid: r for sid, r in self._reveals.items() if sid in keep}
        return self._current

    def end_stream(self, stream_id: int) -> None:
        """Mark *stream_id* finished; it can no longer be interrupted."""
        if self._current == stream_id:
            self._current = None

    def reveal_for(self, stream_id: int) -> ContentReveal:
        """The stream's reveal buffer, created on first use."""
        reveal = self._reveals.get(stream_id)
        if reveal is None:
            reveal = self._reveals[stream_id] = ContentReveal()
        return reveal

    @property
    def current_stream(self) -> int | None:
        return self._current

    @property
    def interrupted_stream(self) -> int | None:
        return self._interrupted

    def should_block(self, stream_id: int | None) -> bool:
        return stream_id is not None and stream_id in (self._interrupted, self._retained)

    # -- Interrupt -------------------------------------------------------------

    def interrupt(self, stream_id: int | None = None) -> InterruptOutcome | None:
        """Interrupt *stream_id* (default: the current stream).

        Returns ``None`` when there is no stream or it was already
        interrupted.
        """
        sid = stream_id if stream_id is not None else self._current
        if sid is None or self.should_block(sid):
            return None

        self._interrupted = sid
        visible = self.reveal_for(sid).freeze()

        previous = self.confidence
        self.confidence = clamp_confidence(previous - self.penalty)
        logger.info("Interrupt: stream {} (confidence {} -> {})", sid, previous, self.confidence)
        self._notify()
        return InterruptOutcome(
            stream_id=sid,
            previous_confidence=previous,
            confidence=self.confidence,
            visible_text=visible,
        )

    # -- Guarded writes --------------------------------------------------------

    def apply_confidence(self, stream_id: int | None, value: float) -> bool:
        """Set confidence on behalf of *stream_id* unless it was interrupted."""
        if self.should_block(stream_id):
            logger.debug("Interrupt: dropped confidence {} from interrupted stream {}", value, stream_id)
            return False
        self.confidence = clamp_confidence(value)
        self._notify()
        return True

    def _notify(self) -> None:
        if self._on_confidence is not None:
            self._on_confidence(self.confidence)
