"""Text-generation adapters.

A ``TextSource`` yields the raw text of one completion as fragments.  The
pipeline only concatenates them, so any provider that can stream text fits
behind this protocol.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

from pydantic_ai import Agent, ModelSettings

logger = logging.getLogger(__name__)


@runtime_checkable
class TextSource(Protocol):
    def stream(self, prompt: str, context: Mapping[str, Any]) -> AsyncIterator[str]:
        """Yield completion fragments for *prompt*."""
        ...


# ---------------------------------------------------------------------------
# pydantic-ai
# ---------------------------------------------------------------------------


class ModelTextSource:
    """Stream text from a pydantic-ai model.

    *context* is appended to the prompt as a JSON block.  Provider credentials
    are resolved by pydantic-ai from its usual environment variables.
    """

    def __init__(self, model: str, *, max_tokens: int | None = None, instructions: str | None = None) -> None:
        self.model = model
        self._agent = Agent(model, output_type=str, instructions=instructions, defer_model_check=True)
        self._model_settings = ModelSettings(max_tokens=max_tokens) if max_tokens else None

    async def stream(self, prompt: str, context: Mapping[str, Any]) -> AsyncIterator[str]:
        user_prompt = prompt
        if context:
            user_prompt = f"{prompt}\n\nContext:\n{json.dumps(dict(context), ensure_ascii=False)}"

        logger.debug("Requesting completion from %s", self.model)
        async with self._agent.run_stream(user_prompt, model_settings=self._model_settings) as result:
            async for delta in result.stream_text(delta=True):
                yield delta


# ---------------------------------------------------------------------------
# Static
# ---------------------------------------------------------------------------


class StaticTextSource:
    """Replay fixed fragments.  Useful for tests and offline demos.

    ``delay`` seconds are slept between fragments.  ``prompts`` records every
    prompt received.
    """

    def __init__(self, fragments: Iterable[str] | str, *, delay: float = 0) -> None:
        self.fragments = [fragments] if isinstance(fragments, str) else list(fragments)
        self.delay = delay
        self.prompts: list[str] = []

    async def stream(self, prompt: str, context: Mapping[str, Any]) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        for fragment in self.fragments:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield fragment
