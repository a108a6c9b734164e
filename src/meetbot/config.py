"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

import shlex
from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Orchestrator settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Meeting SDK credentials (both required to join)
    ZOOM_SDK_KEY: str = ""
    ZOOM_SDK_SECRET: str = ""
    SDK_TOKEN_TTL_SECONDS: int = 2 * 60 * 60

    # Transcription backend (Whisper-compatible deployment)
    WHISPER_ENDPOINT: str = ""
    WHISPER_API_KEY: str = ""
    WHISPER_DEPLOYMENT: str = "whisper"
    WHISPER_API_VERSION: str = "2024-02-01"
    TRANSCRIPTION_TIMEOUT_MS: int = 30_000

    # Capacity and recovery
    MAX_CONCURRENT_BOTS: int = 10
    BOT_MAX_RETRIES: int = 3
    BOT_RETRY_DELAY_MS: int = 5_000
    BOT_AUTO_RECONNECT: bool = True
    JOIN_RATE_LIMIT_MS: int = 10_000

    # Timers
    BOT_HEALTH_CHECK_MS: int = 30_000
    AUDIO_CHUNK_DURATION_MS: int = 5_000
    BOT_TIMEOUT_MS: int = 2 * 60 * 60 * 1000
    BOT_JOIN_TIMEOUT_MS: int = 60_000
    BOT_STOP_GRACE_MS: int = 5_000
    BOT_CLEANUP_INTERVAL_MS: int = 60_000
    BOT_STALE_AFTER_MS: int = 5 * 60 * 1000

    # Audio format of the PCM stream produced by the bot process
    AUDIO_SAMPLE_RATE: int = 16_000
    AUDIO_CHANNELS: int = 1
    MIN_AUDIO_BYTES: int = 1_000

    # External bot process
    BOT_RUNNER_COMMAND: str = "node bot-runner/zoom-bot-runner.js"
    BOT_DEFAULT_NAME: str = "IRIS Meeting Agent"

    def bot_runner_argv(self) -> list[str]:
        """Split BOT_RUNNER_COMMAND into an argv list (shell quoting rules)."""
        return shlex.split(self.BOT_RUNNER_COMMAND)

    def has_sdk_credentials(self) -> bool:
        return bool(self.ZOOM_SDK_KEY and self.ZOOM_SDK_SECRET)

    def has_transcription_backend(self) -> bool:
        return bool(self.WHISPER_ENDPOINT and self.WHISPER_API_KEY)


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
