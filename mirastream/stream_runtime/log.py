"""Logging configuration using loguru.

Stdlib records (uvicorn, httpx, pydantic-ai) are routed into loguru so the
service has one format.  Stream-scoped code binds ``session`` and ``stream``
extras (``logger.bind(session=..., stream=...)``); records without them show
``-``.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[session]}#{extra[stream]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class _StdlibBridge(logging.Handler):
    """Forward stdlib logging records to loguru at the original call-site."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", *, serialize: bool = False) -> None:
    """Install loguru as the only sink.

    ``serialize=True`` writes one JSON object per record instead of the
    coloured line format.  Call once per process (lifespan or CLI command).
    """
    level = level.upper()

    logger.remove()
    logger.configure(extra={"session": "-", "stream": "-"})
    if serialize:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_FORMAT)

    logging.basicConfig(handlers=[_StdlibBridge()], level=0, force=True)
    for noisy in ("uvicorn.access", "httpx", "httpcore", "sse_starlette"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("Logging initialised (level={}, serialize={})", level, serialize)
