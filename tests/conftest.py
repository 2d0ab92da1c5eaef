"""Shared test fixtures.

Settings are read from ``MIRA_*`` environment variables and cached; every
test starts from a clean environment and an empty cache.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from mirastream.stream_runtime.models.state import ConversationState
from mirastream.stream_runtime.settings import _get_settings_cached


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop MIRA_* variables and the settings cache around each test."""
    for key in list(os.environ):
        if key.startswith("MIRA_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(os.path.dirname(__file__))  # keep a developer's .env out of tests
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


@pytest.fixture
def state() -> ConversationState:
    return ConversationState(confidence_in_user=50)
