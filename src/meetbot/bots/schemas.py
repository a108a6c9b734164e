"""Pydantic v2 schemas for the meeting bot domain.

Defines the data contracts shared by the orchestrator components: bot
status values, per-bot counters, transcript segments, join requests,
audio chunks, and health reports.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class BotStatus(str, Enum):
    """Lifecycle status of one bot instance."""

    INITIALIZING = "initializing"
    JOINING = "joining"
    CONNECTED = "connected"
    RECORDING = "recording"
    LEAVING = "leaving"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    RECONNECTING = "reconnecting"


# Statuses that count toward capacity and per-session uniqueness.
# initializing covers the window between registration and spawn.
ACTIVE_STATUSES = frozenset({
    BotStatus.INITIALIZING,
    BotStatus.JOINING,
    BotStatus.CONNECTED,
    BotStatus.RECORDING,
    BotStatus.RECONNECTING,
})

# connected and recording form one super-state: audio flows in both
CONNECTED_STATUSES = frozenset({BotStatus.CONNECTED, BotStatus.RECORDING})

TERMINAL_STATUSES = frozenset({BotStatus.DISCONNECTED, BotStatus.ERROR})


# ── Counters & Transcript ────────────────────────────────────────────────────


class BotStats(BaseModel):
    """Running counters for one bot instance."""

    audio_chunks: int = 0
    total_audio_duration: float = 0.0
    transcript_segments: int = 0
    participant_count: int = 0
    errors: int = 0
    reconnects: int = 0


class TranscriptSegment(BaseModel):
    """One transcribed span of meeting audio.

    start_time and end_time are epoch seconds of the flushed audio window.
    """

    text: str
    start_time: float
    end_time: float
    speaker_name: str | None = None
    speaker_id: str | None = None
    confidence: float | None = None


# ── Requests ─────────────────────────────────────────────────────────────────


class JoinRequest(BaseModel):
    """Request to place a bot into a meeting."""

    meeting_session_id: str
    meeting_number: str
    meeting_password: str | None = None
    bot_name: str | None = None
    join_url: str | None = None
    priority: Literal["high", "normal", "low"] = "normal"

    @field_validator("meeting_session_id", "meeting_number")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


# ── Audio & Health ───────────────────────────────────────────────────────────


class AudioChunk(BaseModel):
    """Decoded audio chunk as published with the audio.chunk event."""

    data: bytes
    timestamp: float | None = None
    duration: float = 0.0
    sample_rate: int
    channels: int


class BotHealthStatus(BaseModel):
    """Health report row for one tracked bot."""

    bot_id: str
    status: BotStatus
    uptime: float = Field(description="Seconds since the bot first connected")
    last_health_check: datetime
    stats: BotStats
    healthy: bool
