"""Tests for the client connection manager."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

import httpx

from mirastream.client.connection import ConnectionManager, ConnectionOptions
from mirastream.stream_runtime.models.enums import ErrorCode, EventType
from mirastream.stream_runtime.models.events import EventEnvelope, StateDelta
from mirastream.stream_runtime.protocol.framing import encode_frame
from mirastream.stream_runtime.protocol.producer import StreamProducer

URL = "http://test/api/sessions/s1/stream"


def _delta(producer: StreamProducer, version: int, **values: object) -> EventEnvelope:
    ops = [{"op": "replace", "path": f"/{k}", "value": v} for k, v in values.items()]
    return producer.state_delta(StateDelta(version=version, operations=ops))


def _wire(*envelopes: EventEnvelope) -> bytes:
    return "".join(encode_frame(e) for e in envelopes).encode()


class _Recorder:
    def __init__(self) -> None:
        self.events: list[EventEnvelope] = []
        self.errors: list[str] = []
        self.sleeps: list[float] = []

    def on_event(self, envelope: EventEnvelope) -> None:
        self.events.append(envelope)

    def on_error(self, message: str) -> None:
        self.errors.append(message)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def _manager(
    handler: object,
    rec: _Recorder,
    options: ConnectionOptions | None = None,
) -> tuple[ConnectionManager, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = ConnectionManager(
        URL,
        on_event=rec.on_event,
        on_error=rec.on_error,
        options=options,
        client=client,
        json={"userInput": "hi"},
        sleep=rec.sleep,
    )
    return manager, client


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


async def test_delivers_envelopes_and_skips_bad_frames() -> None:
    producer = StreamProducer()
    start = producer.message_start("m")
    chunk = producer.content(start, "hello", 0)
    wire = (
        b"data: not json\n\n"
        + _wire(start)
        + b'data: {"event_id": "x", "type": "TEXT_CONTENT"}\n\n'
        + b": ping\n\n"
        + _wire(chunk)
    )

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=wire, headers={"content-type": "text/event-stream"})

    rec = _Recorder()
    manager, client = _manager(handler, rec)
    async with client:
        await manager.run()

    assert [e.event_id for e in rec.events] == [start.event_id, chunk.event_id]
    assert rec.errors == []
    assert manager.state.is_streaming is False


async def test_frames_split_across_transport_chunks() -> None:
    producer = StreamProducer()
    start = producer.message_start("m")
    wire = _wire(start, producer.content(start, "█ split █", 0))

    async def body() -> AsyncIterator[bytes]:
        for i in range(0, len(wire), 5):
            yield wire[i : i + 5]

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    rec = _Recorder()
    manager, client = _manager(handler, rec)
    async with client:
        await manager.run()

    assert [e.type for e in rec.events] == [EventType.TEXT_MESSAGE_START, EventType.TEXT_CONTENT]
    assert rec.events[1].data["chunk"] == "█ split █"


async def test_request_carries_body() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"")

    rec = _Recorder()
    manager, client = _manager(handler, rec)
    async with client:
        await manager.run()

    assert seen[0].method == "POST"
    assert seen[0].headers["accept"] == "text/event-stream"
    assert json.loads(seen[0].content) == {"userInput": "hi"}


async def test_malformed_schema_version_is_skipped() -> None:
    producer = StreamProducer()
    start = producer.message_start("m")
    bad = producer.content(start, "lost", 0).model_copy(update={"schema_version": "1.0"})
    end = producer.message_end(start, 1)

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_wire(start, bad, end))

    rec = _Recorder()
    manager, client = _manager(handler, rec)
    async with client:
        await manager.run()

    assert [e.event_id for e in rec.events] == [start.event_id, end.event_id]
    assert rec.errors == []


async def test_handler_failure_ends_stream_with_error() -> None:
    producer = StreamProducer()
    start = producer.message_start("m")
    wire = _wire(start, producer.content(start, "x", 0))
    errors: list[str] = []

    def on_event(envelope: EventEnvelope) -> None:
        raise ValueError("boom")

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=wire)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        manager = ConnectionManager(URL, on_event=on_event, on_error=errors.append, client=client)
        await manager.run()

    assert len(errors) == 1
    assert "boom" in errors[0]
    assert manager.state.failed is True
    assert manager.state.is_streaming is False


# ---------------------------------------------------------------------------
# STATE_DELTA deduplication
# ---------------------------------------------------------------------------


def _dedup_wire() -> tuple[bytes, list[EventEnvelope]]:
    producer = StreamProducer()
    envelopes = [
        _delta(producer, 1, confidenceInUser=60),
        _delta(producer, 2, confidenceInUser=60),
        _delta(producer, 3, confidenceInUser=60, currentMood="curious"),
    ]
    return _wire(*envelopes), envelopes


async def test_duplicate_state_deltas_are_suppressed() -> None:
    wire, envelopes = _dedup_wire()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=wire)

    rec = _Recorder()
    manager, client = _manager(handler, rec)
    async with client:
        await manager.run()

    assert [e.event_id for e in rec.events] == [envelopes[0].event_id, envelopes[2].event_id]
    assert rec.events[1].data["operations"] == [{"op": "replace", "path": "/currentMood", "value": "curious"}]


async def test_deduplication_can_be_disabled() -> None:
    wire, envelopes = _dedup_wire()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=wire)

    rec = _Recorder()
    manager, client = _manager(handler, rec, ConnectionOptions(deduplicate_updates=False))
    async with client:
        await manager.run()

    assert [e.event_id for e in rec.events] == [e.event_id for e in envelopes]
    assert len(rec.events[1].data["operations"]) == 1


def test_deduplicate_is_idempotent_per_value() -> None:
    producer = StreamProducer()
    manager = ConnectionManager(URL, on_event=lambda e: None)

    assert manager.deduplicate(_delta(producer, 1, confidenceInUser=40)) is not None
    assert manager.deduplicate(_delta(producer, 2, confidenceInUser=40)) is None
    assert manager.deduplicate(_delta(producer, 3, confidenceInUser=41)) is not None
    assert manager.deduplicate(_delta(producer, 4, confidenceInUser=40)) is not None


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


async def test_server_error_is_retried_with_backoff() -> None:
    producer = StreamProducer()
    wire = _wire(producer.error(ErrorCode.STREAM_ERROR, "in-band"))
    attempts = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            return httpx.Response(503)
        return httpx.Response(200, content=wire)

    rec = _Recorder()
    manager, client = _manager(handler, rec)
    async with client:
        await manager.run()

    assert attempts == 3
    assert rec.sleeps == [1.0, 2.0]
    assert manager.state.retry_count == 0
    assert manager.state.error is None
    assert rec.errors == []
    assert [e.type for e in rec.events] == [EventType.ERROR]


async def test_retries_exhausted() -> None:
    attempts = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        raise httpx.ConnectError("refused", request=request)

    rec = _Recorder()
    manager, client = _manager(handler, rec, ConnectionOptions(retry_max_attempts=3, retry_delay_ms=100))
    async with client:
        await manager.run()

    assert attempts == 4
    assert rec.sleeps == [0.1, 0.2, 0.4]
    assert len(rec.errors) == 1
    assert manager.state.failed is True
    assert manager.state.error == rec.errors[0]
    assert rec.events == []


async def test_client_error_is_not_retried() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"detail": "bad"})

    rec = _Recorder()
    manager, client = _manager(handler, rec)
    async with client:
        await manager.run()

    assert rec.sleeps == []
    assert len(rec.errors) == 1
    assert rec.errors[0].startswith("HTTP 422")


# ---------------------------------------------------------------------------
# Abort
# ---------------------------------------------------------------------------


async def test_abort_stops_stream_and_clears_cache() -> None:
    producer = StreamProducer()
    first = _delta(producer, 1, confidenceInUser=60)
    release = asyncio.Event()

    async def body() -> AsyncIterator[bytes]:
        yield _wire(first)
        await release.wait()
        yield _wire(_delta(producer, 2, confidenceInUser=70))

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    rec = _Recorder()
    manager, client = _manager(handler, rec)
    async with client:
        manager.start()
        for _ in range(100):
            if rec.events:
                break
            await asyncio.sleep(0.01)
        assert manager.state.is_streaming is True
        assert manager.dedup_cache_size == 1

        manager.abort()
        manager.abort()
        assert manager.state.is_streaming is False
        assert manager.dedup_cache_size == 0

        await manager.wait()
        release.set()

    assert [e.event_id for e in rec.events] == [first.event_id]
    assert rec.sleeps == []
    assert rec.errors == []
    assert manager.aborted
