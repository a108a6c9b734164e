"""Domain event schemas published by the bot orchestrator.

Every event names the bot and meeting session it concerns and carries a
small inline ``data`` payload whose keys depend on the event type:

- bot.joined: meeting_number
- bot.connected: status
- bot.left: transcript_segments, duration_minutes, stats
- bot.error: error
- bot.unhealthy: status, last_health_check
- audio.chunk: chunk (AudioChunk)
- transcription.segment: segment (TranscriptSegment)
- participant.changed: participant, action
- speaker.changed: speaker_id, speaker_name
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of lifecycle and domain events emitted for bots."""

    BOT_JOINED = "bot.joined"
    BOT_CONNECTED = "bot.connected"
    BOT_LEFT = "bot.left"
    BOT_ERROR = "bot.error"
    BOT_UNHEALTHY = "bot.unhealthy"
    AUDIO_CHUNK = "audio.chunk"
    TRANSCRIPTION_SEGMENT = "transcription.segment"
    PARTICIPANT_CHANGED = "participant.changed"
    SPEAKER_CHANGED = "speaker.changed"


class BotEvent(BaseModel):
    """One published event.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        event_type: The kind of event.
        timestamp: UTC creation time.
        bot_id: Bot the event concerns.
        meeting_session_id: Meeting session of that bot.
        data: Event-specific payload.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    bot_id: str
    meeting_session_id: str
    data: dict[str, Any] = Field(default_factory=dict)
