"""Line framing for the envelope stream.

Each frame is ``data: <json>`` followed by a blank line.  The decoder is
incremental: transport chunks may split a frame anywhere, including in the
middle of a multi-byte character when fed bytes.
"""

from __future__ import annotations

import codecs
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mirastream.stream_runtime.models.events import EventEnvelope

DATA_PREFIX = "data: "


def encode_frame(envelope: EventEnvelope) -> str:
    """Encode one envelope as a complete wire frame."""
    return f"{DATA_PREFIX}{envelope.to_json()}\n\n"


class FrameDecoder:
    """Turn an arbitrary chunking of the wire text into ``data:`` payloads.

    Lines without the ``data: `` prefix (blank separators, ``: ping``
    keep-alive comments, ``event:``/``id:`` fields) are ignored.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: str | bytes) -> list[str]:
        """Add a chunk; return the payloads of every line it completed."""
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [payload for line in lines if (payload := _payload(line)) is not None]

    def flush(self) -> list[str]:
        """Return the payload of a trailing unterminated line, if any."""
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        payload = _payload(tail)
        return [payload] if payload is not None else []


def _payload(line: str) -> str | None:
    line = line.removesuffix("\r")
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX) :]
