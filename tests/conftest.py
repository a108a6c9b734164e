"""Shared fixtures for orchestrator tests.

Provides:
- make_settings: Settings factory with short timers and test credentials
  (no .env file is read)
- settings: default test Settings
- process_factory: FakeProcessFactory recording every spawned bot process
"""

from __future__ import annotations

import pytest

from src.meetbot.config import Settings
from tests.fakes import FakeProcessFactory

TEST_DEFAULTS = dict(
    ZOOM_SDK_KEY="test-sdk-key",
    ZOOM_SDK_SECRET="test-sdk-secret",
    WHISPER_ENDPOINT="https://whisper.example.com",
    WHISPER_API_KEY="test-whisper-key",
    BOT_RUNNER_COMMAND="node bot-runner/zoom-bot-runner.js",
    MAX_CONCURRENT_BOTS=10,
    BOT_MAX_RETRIES=3,
    BOT_RETRY_DELAY_MS=10,
    BOT_AUTO_RECONNECT=False,
    JOIN_RATE_LIMIT_MS=10_000,
    BOT_HEALTH_CHECK_MS=30_000,
    AUDIO_CHUNK_DURATION_MS=60_000,
    BOT_JOIN_TIMEOUT_MS=1_000,
    BOT_STOP_GRACE_MS=200,
    TRANSCRIPTION_TIMEOUT_MS=1_000,
)


@pytest.fixture
def make_settings():
    """Build Settings from test defaults plus overrides."""

    def _make(**overrides) -> Settings:
        return Settings(_env_file=None, **{**TEST_DEFAULTS, **overrides})

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def process_factory() -> FakeProcessFactory:
    return FakeProcessFactory()
