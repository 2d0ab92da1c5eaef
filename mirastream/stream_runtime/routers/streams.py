"""Stream endpoints (RPC-style).

Thin HTTP adapter -- registers the stream, runs the pipeline and frames
its envelopes as ``data: <json>`` lines.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, status
from sse_starlette.sse import EventSourceResponse

from mirastream.stream_runtime.context import ActiveStream
from mirastream.stream_runtime.deps import Registry, Settings, Source
from mirastream.stream_runtime.execution.pipeline import run_stream
from mirastream.stream_runtime.models.api import InterruptResponse, StreamRequest
from mirastream.stream_runtime.protocol.producer import StreamProducer
from mirastream.stream_runtime.registry import ShuttingDownError

router = APIRouter(prefix="/sessions", tags=["streams"])


@router.post("/{session_id}/stream")
async def handle_stream(
    session_id: str,
    body: StreamRequest,
    registry: Registry,
    source: Source,
    settings: Settings,
) -> EventSourceResponse:
    stream = ActiveStream(session_id=session_id)
    try:
        registry.register(stream)
    except ShuttingDownError:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Server is shutting down.") from None

    producer = StreamProducer(schema_version=settings.schema_version)

    async def frames() -> AsyncIterator[dict[str, str]]:
        try:
            async for envelope in run_stream(
                body,
                producer=producer,
                source=source,
                settings=settings,
                cancel=stream.cancel,
                session_id=session_id,
            ):
                yield {"data": envelope.to_json()}
        finally:
            registry.unregister(stream)

    return EventSourceResponse(frames(), sep="\n")


@router.post("/{session_id}/interrupt", response_model=InterruptResponse, response_model_by_alias=False)
async def handle_interrupt(session_id: str, registry: Registry) -> InterruptResponse:
    """Cancel the session's active stream.  Safe to call repeatedly."""
    return InterruptResponse(session_id=session_id, interrupted=registry.interrupt(session_id))
