"""Client-side transport for one envelope stream.

``ConnectionManager`` opens the HTTP stream, decodes ``data:`` frames,
validates envelopes, deduplicates repeated STATE_DELTA values and retries
recoverable failures with exponential backoff.  It delivers envelopes in
arrival order; reordering is the caller's job (``SequencingBuffer``).
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from mirastream.stream_runtime.models.enums import EventType
from mirastream.stream_runtime.models.events import EventEnvelope
from mirastream.stream_runtime.protocol.framing import FrameDecoder
from mirastream.stream_runtime.protocol.schema import SchemaRegistry, default_registry, validate_envelope

EventHandler = Callable[[EventEnvelope], Awaitable[None] | None]
ErrorHandler = Callable[[str], Awaitable[None] | None]


class ConnectionFailedError(RuntimeError):
    """The stream could not be (re)established."""


class _ServerError(Exception):
    """HTTP 5xx -- treated like a transport failure and retried."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


@dataclass
class ConnectionOptions:
    retry_max_attempts: int = 3
    retry_delay_ms: int = 1000
    """Base delay; attempt *n* waits ``retry_delay_ms * 2**(n-1)``."""

    deduplicate_updates: bool = True
    timeout: float = 60.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class ConnectionState:
    is_streaming: bool = False
    error: str | None = None
    """``Retrying...`` between attempts, the failure message once terminal."""

    retry_count: int = 0
    failed: bool = False


async def _call(handler: Callable[..., Any] | None, *args: Any) -> None:
    if handler is None:
        return
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class ConnectionManager:
    """Own the transport of a single stream.

    Use ``start()`` to run in the background and ``abort()`` to stop, or
    ``await run()`` directly.  Also usable as an async context manager, which
    aborts on exit.
    """

    def __init__(
        self,
        url: str,
        on_event: EventHandler,
        on_error: ErrorHandler | None = None,
        options: ConnectionOptions | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        method: str = "POST",
        json: Any = None,
        registry: SchemaRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.method = method
        self.body = json
        self.options = options or ConnectionOptions()
        self.state = ConnectionState()
        self._on_event = on_event
        self._on_error = on_error
        self._client = client
        self._registry = registry or default_registry()
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._response: httpx.Response | None = None
        self._aborted = False
        self._last_values: dict[str, Any] = {}

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        """Run the stream in a background task (idempotent)."""
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return self._task

    def abort(self) -> None:
        """Stop the stream now.  Idempotent, never blocks.

        Cancelling the read task closes the response and the request.
        """
        if self._aborted:
            return
        self._aborted = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._response = None
        self._last_values.clear()
        self.state.is_streaming = False
        logger.debug("Connection: aborted {}", self.url)

    async def wait(self) -> None:
        """Wait for the stream to end (normally, by failure or by abort)."""
        if self._task is not None:
            await asyncio.wait([self._task])

    async def aclose(self) -> None:
        self.abort()
        await self.wait()

    async def __aenter__(self) -> ConnectionManager:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def dedup_cache_size(self) -> int:
        return len(self._last_values)

    # -- Run loop --------------------------------------------------------------

    async def run(self) -> None:
        """Stream until the server ends the response, retries run out or abort."""
        client = self._client or httpx.AsyncClient(timeout=self.options.timeout)
        try:
            while not self._aborted:
                self.state.is_streaming = True
                try:
                    await self._consume(client)
                except (httpx.TransportError, _ServerError) as exc:
                    if self._aborted:
                        return
                    if not await self._schedule_retry(exc):
                        return
                except ConnectionFailedError as exc:
                    await self._fail(str(exc))
                    return
                except Exception as exc:
                    if self._aborted:
                        return
                    logger.exception("Connection: event handler failed")
                    await self._fail(f"Stream processing failed: {exc}")
                    return
                else:
                    self.state.error = None
                    return
        finally:
            self.state.is_streaming = False
            self._response = None
            if self._client is None:
                await client.aclose()

    async def _schedule_retry(self, exc: Exception) -> bool:
        self.state.retry_count += 1
        attempt = self.state.retry_count
        if attempt > self.options.retry_max_attempts:
            await self._fail(f"Connection failed after {self.options.retry_max_attempts} retries: {exc}")
            return False

        delay_ms = self.options.retry_delay_ms * 2 ** (attempt - 1)
        self.state.error = f"Retrying... (attempt {attempt}/{self.options.retry_max_attempts})"
        logger.warning("Connection: {} -- retry {} in {}ms", exc, attempt, delay_ms)
        await self._sleep(delay_ms / 1000)
        return not self._aborted

    async def _fail(self, message: str) -> None:
        self.state.error = message
        self.state.failed = True
        self.state.is_streaming = False
        logger.error("Connection: {}", message)
        await _call(self._on_error, message)

    async def _consume(self, client: httpx.AsyncClient) -> None:
        headers = {"Accept": "text/event-stream", **self.options.headers}
        async with client.stream(self.method, self.url, json=self.body, headers=headers) as response:
            self._response = response
            if response.status_code >= 500:
                raise _ServerError(response.status_code)
            if response.status_code >= 400:
                await response.aread()
                msg = f"HTTP {response.status_code}: {response.text[:200]}"
                raise ConnectionFailedError(msg)

            self.state.retry_count = 0
            self.state.error = None

            decoder = FrameDecoder()
            async for chunk in response.aiter_bytes():
                for payload in decoder.feed(chunk):
                    await self._dispatch(payload)
            for payload in decoder.flush():
                await self._dispatch(payload)

    # -- Frames ----------------------------------------------------------------

    async def _dispatch(self, payload: str) -> None:
        envelope = self._decode(payload)
        if envelope is None:
            return
        if envelope.type == EventType.STATE_DELTA and self.options.deduplicate_updates:
            envelope = self.deduplicate(envelope)
            if envelope is None:
                return
        await _call(self._on_event, envelope)

    def _decode(self, payload: str) -> EventEnvelope | None:
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as exc:
            logger.warning("Connection: skipping malformed frame ({})", exc)
            return None
        if not isinstance(raw, dict):
            logger.warning("Connection: skipping non-object frame")
            return None

        errors = validate_envelope(raw, self._registry)
        if errors:
            logger.warning("Connection: skipping invalid envelope: {}", "; ".join(errors))
            return None
        try:
            return EventEnvelope.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Connection: skipping invalid envelope: {}", exc.error_count())
            return None

    def deduplicate(self, envelope: EventEnvelope) -> EventEnvelope | None:
        """Drop operations whose value equals the last one seen for their path.

        Returns ``None`` when every operation was a duplicate.
        """
        operations = envelope.data.get("operations") or []
        if not operations:
            return envelope

        kept: list[dict[str, Any]] = []
        for op in operations:
            path = op.get("path")
            if "value" in op:
                if path in self._last_values and self._last_values[path] == op["value"]:
                    continue
                self._last_values[path] = op["value"]
            else:
                self._last_values.pop(path, None)
            kept.append(op)

        if not kept:
            logger.debug("Connection: suppressed duplicate STATE_DELTA {}", envelope.event_id)
            return None
        if len(kept) == len(operations):
            return envelope
        return envelope.model_copy(update={"data": {**envelope.data, "operations": kept}})
