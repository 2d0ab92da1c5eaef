"""Sequencing buffer -- reorders envelopes that arrive out of sequence.

One buffer per stream.  Delivery order is decided by ``sequence_number``
alone; ``timestamp`` is never consulted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from mirastream.stream_runtime.models.events import EventEnvelope


class SequencingBuffer:
    """Hold out-of-order envelopes and release them contiguously.

    Invariant: every key in ``_pending`` is strictly greater than
    ``_next_expected``.
    """

    def __init__(self, start: int = 0) -> None:
        self._next_expected = start
        self._pending: dict[int, EventEnvelope] = {}

    # -- Query -----------------------------------------------------------------

    @property
    def next_expected(self) -> int:
        return self._next_expected

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- Mutation --------------------------------------------------------------

    def process(self, envelope: EventEnvelope) -> list[EventEnvelope]:
        """Submit one envelope; return every envelope that is now deliverable.

        The returned list is in sequence order and includes *envelope* itself
        when it closed the gap at the cursor.
        """
        seq = envelope.sequence_number

        if seq < self._next_expected:
            logger.debug("Sequencing: drop duplicate seq={} (expected {})", seq, self._next_expected)
            return []

        if seq > self._next_expected:
            if seq in self._pending:
                logger.debug("Sequencing: drop duplicate pending seq={}", seq)
            else:
                self._pending[seq] = envelope
                logger.debug("Sequencing: buffered seq={} (expected {})", seq, self._next_expected)
            return []

        ordered = [envelope]
        self._next_expected += 1
        while self._next_expected in self._pending:
            ordered.append(self._pending.pop(self._next_expected))
            self._next_expected += 1
        return ordered

    def flush(self) -> list[EventEnvelope]:
        """Release everything still buffered, sorted by sequence number.

        Used at stream end so a tail that never became contiguous is not lost.
        The cursor moves past the highest flushed sequence number.
        """
        remaining = [self._pending[seq] for seq in sorted(self._pending)]
        self._pending.clear()
        if remaining:
            logger.debug("Sequencing: flushed {} envelopes with gaps", len(remaining))
            self._next_expected = remaining[-1].sequence_number + 1
        return remaining

    def reset(self, start: int = 0) -> None:
        self._next_expected = start
        self._pending.clear()
