"""
Pytest configuration for the craftchat test suite.

Async tests use ``@pytest.mark.anyio``; the backend is pinned to asyncio.
"""

from __future__ import annotations

import pytest

from craftchat.config import Settings


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer CRAFTCHAT_* variables and .env files out of the tests."""
    import os

    for key in list(os.environ):
        if key.startswith("CRAFTCHAT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setitem(Settings.model_config, "env_file", None)


@pytest.fixture
def settings() -> Settings:
    """Settings with fast retries and pattern-only detection."""
    return Settings(
        ollama={"retry_base_delay_seconds": 0.0},
        claude={"api_key": "sk-ant-test", "retry_base_delay_seconds": 0.0},
        openai={"api_key": "sk-test", "retry_base_delay_seconds": 0.0},
        chat={"detection": {"intelligent_detection": False}},
    )
