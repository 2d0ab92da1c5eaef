"""Service configuration loaded from MIRA_* environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

from mirastream.stream_runtime.models.events import DEFAULT_SCHEMA_VERSION


class MiraSettings(BaseSettings):
    """Mirastream runtime settings.

    All fields are read from environment variables with the ``MIRA_`` prefix.
    For example, ``MIRA_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    LLM provider keys (ANTHROPIC_API_KEY, OPENAI_API_KEY, ...) are **not**
    managed here -- they are read directly by pydantic-ai from its own
    provider conventions.
    """

    model_config = SettingsConfigDict(
        env_prefix="MIRA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    """Emit one JSON object per log record (for log shippers)."""

    # -- Text generation -------------------------------------------------------
    model: str | None = None
    """pydantic-ai model string, e.g. ``anthropic:claude-haiku-4-5``.

    When unset, text requests end with a ``SERVER_CONFIG_ERROR`` envelope.
    """

    max_tokens: int = 300

    # -- Protocol --------------------------------------------------------------
    schema_version: str = DEFAULT_SCHEMA_VERSION
    chunk_delay_ms: int = 10
    """Pause between TEXT_CONTENT envelopes.  Also the server-side interrupt check point."""

    emit_analysis_events: bool = False
    """Emit ANALYSIS_COMPLETE and RAPPORT_UPDATE between STATE_DELTA and RESPONSE_COMPLETE."""

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000
    graceful_shutdown_timeout: int = 60
    """Seconds to wait for active streams to finish during shutdown.

    After this timeout, remaining streams are force-interrupted.
    """


def get_settings() -> MiraSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``get_settings.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> MiraSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return MiraSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
