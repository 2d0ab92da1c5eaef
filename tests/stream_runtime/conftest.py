"""Fixtures for HTTP-level stream runtime tests."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient
from sse_starlette.sse import AppStatus

from mirastream.stream_runtime.app import app
from mirastream.stream_runtime.execution.source import StaticTextSource
from mirastream.stream_runtime.registry import StreamRegistry
from mirastream.stream_runtime.settings import MiraSettings, get_settings

ANALYSIS_JSON = (
    '{"confidenceDelta": +8, "thoughtfulness": 70, "adventurousness": 40, "engagement": 80, '
    '"curiosity": 65, "superficiality": 10, "reasoning": "You asked a real question. That helps."}'
)


@pytest.fixture
def registry() -> StreamRegistry:
    return StreamRegistry()


@pytest.fixture
def text_source() -> StaticTextSource:
    return StaticTextSource(["Sure. ", ANALYSIS_JSON[:40], ANALYSIS_JSON[40:]])


@pytest.fixture
def settings() -> MiraSettings:
    return MiraSettings(chunk_delay_ms=0)


@pytest.fixture
async def client(
    registry: StreamRegistry,
    text_source: StaticTextSource,
    settings: MiraSettings,
) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the app.

    The app lifespan does NOT run under ``ASGITransport``, so state fields
    are pre-set here.
    """
    app.state.registry = registry
    app.state.text_source = text_source
    app.dependency_overrides[get_settings] = lambda: settings
    AppStatus.should_exit = False
    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None  # event is bound to the previous test's loop

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
