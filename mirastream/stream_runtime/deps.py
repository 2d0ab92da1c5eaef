"""FastAPI dependency injection for the registry, text source and settings.

Usage in route handlers::

    @router.post("/{session_id}/interrupt")
    async def interrupt(session_id: str, registry: Registry) -> ...:
        ...

The objects live on ``app.state`` and are created by the lifespan.  Tests
running under ``ASGITransport`` (no lifespan) set them directly.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from mirastream.stream_runtime.execution.source import TextSource
from mirastream.stream_runtime.registry import StreamRegistry
from mirastream.stream_runtime.settings import MiraSettings, get_settings


def get_registry(request: Request) -> StreamRegistry:
    registry: StreamRegistry | None = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stream registry not initialised.",
        )
    return registry


def get_text_source(request: Request) -> TextSource | None:
    """Return the configured text source, or ``None`` when MIRA_MODEL is unset.

    A missing source is not an HTTP error: the stream reports it in-band as a
    ``SERVER_CONFIG_ERROR`` envelope.
    """
    return getattr(request.app.state, "text_source", None)


# -- Annotated type aliases for concise route signatures ---------------------

Registry = Annotated[StreamRegistry, Depends(get_registry)]
"""Annotated dependency: in-process stream registry."""

Source = Annotated[TextSource | None, Depends(get_text_source)]
"""Annotated dependency: text-generation source (may be ``None``)."""

Settings = Annotated[MiraSettings, Depends(get_settings)]
"""Annotated dependency: cached runtime settings."""
