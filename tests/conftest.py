from __future__ import annotations

import os

import pytest

from unistore.common.config import get_settings

# Metrics stay on so the recording paths run; the registry is process-global.
os.environ.setdefault("ENABLE_METRICS", "true")
os.environ.setdefault("LOG_JSON", "false")
get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture(autouse=True)
def reset_settings_cache():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture
def no_sleep():
    """Records backoff delays instead of sleeping."""
    delays: list[float] = []
    return delays
