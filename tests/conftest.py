"""Pytest configuration and shared fixtures."""

import pytest

from claude_agent_runtime.config import STREAM_CLOSE_TIMEOUT_ENV


@pytest.fixture(autouse=True)
def default_stream_close_timeout(monkeypatch):
    """Keep option defaults independent of the developer's environment."""
    monkeypatch.delenv(STREAM_CLOSE_TIMEOUT_ENV, raising=False)
