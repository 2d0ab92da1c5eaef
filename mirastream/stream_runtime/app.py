from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.routing import APIRouter
from loguru import logger
from sse_starlette.sse import AppStatus

from mirastream.stream_runtime.execution.source import ModelTextSource
from mirastream.stream_runtime.log import setup_logging
from mirastream.stream_runtime.registry import StreamRegistry
from mirastream.stream_runtime.settings import get_settings

# ---------------------------------------------------------------------------
# Shared singletons initialised during lifespan
# ---------------------------------------------------------------------------
registry = StreamRegistry()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, serialize=settings.log_json)

    logger.info("Stream runtime starting (host={}, port={})", settings.host, settings.port)

    _app.state.registry = registry

    # -- Text source -----------------------------------------------------------
    if settings.model:
        _app.state.text_source = ModelTextSource(settings.model, max_tokens=settings.max_tokens)
        logger.info("Text source: {} (max_tokens={})", settings.model, settings.max_tokens)
    else:
        _app.state.text_source = None
        logger.warning("MIRA_MODEL not set -- text streams will end with SERVER_CONFIG_ERROR")

    # -- SSE -------------------------------------------------------------------
    # Streams finish on their own during shutdown; the drain below bounds it.
    AppStatus.disable_automatic_graceful_drain()

    yield

    # -- Shutdown --------------------------------------------------------------
    logger.info("Stream runtime shutting down (active_streams={})", registry.active_count)

    registry.begin_shutdown()

    if registry.active_count > 0:
        timeout = settings.graceful_shutdown_timeout
        logger.info("Waiting for {} active streams to finish (timeout={}s)...", registry.active_count, timeout)
        drained = await registry.wait_until_drained(timeout=timeout)
        if not drained:
            interrupted = registry.interrupt_all()
            logger.warning("Force-interrupted {} streams after timeout", interrupted)
            await registry.wait_until_drained(timeout=5.0)

    # Only after the drain, so every stream could deliver its last envelope.
    AppStatus.should_exit = True
    logger.info("SSE: signalled streams to close")


app = FastAPI(title="Mirastream", lifespan=lifespan)

# ---------------------------------------------------------------------------
# API router -- all endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


from mirastream.stream_runtime.routers.streams import router as streams_router  # noqa: E402

api.include_router(streams_router)

app.include_router(api)
