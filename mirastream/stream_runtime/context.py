"""Server-side handle for an in-flight stream."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field


@dataclass
class ActiveStream:
    """One running response stream.

    Created by the stream router when a request arrives; registered in the
    ``StreamRegistry`` so ``/interrupt`` and shutdown can reach it; discarded
    when the response ends.
    """

    # -- Identity --------------------------------------------------------------
    session_id: str
    stream_key: str = field(default_factory=lambda: uuid.uuid4().hex)
    """Distinguishes successive streams of the same session."""

    # -- Control ---------------------------------------------------------------
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)

    def interrupt(self) -> bool:
        """Request cancellation.  Returns ``False`` if already requested."""
        if self.cancel.is_set():
            return False
        self.cancel.set()
        return True

    @property
    def interrupted(self) -> bool:
        return self.cancel.is_set()
