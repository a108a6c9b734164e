"""In-memory records of tracked bot instances.

BotInstance is the mutable lifecycle record for one bot in one meeting.
BotRegistry indexes instances by bot ID and by meeting session ID. Only
the join path inserts; only stop and the cleanup janitor remove.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from src.meetbot.bots.schemas import (
    ACTIVE_STATUSES,
    BotStats,
    BotStatus,
    TranscriptSegment,
)

if TYPE_CHECKING:
    from src.meetbot.bots.process import BotProcess


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class BotInstance:
    """One agent's lifecycle record for one meeting join.

    ``lock`` serializes state mutations coming from the bot's own message
    stream and from the background health/reconnect/cleanup timers.
    ``flush_lock`` keeps transcription dispatch for this bot in FIFO order.
    """

    id: str
    meeting_session_id: str
    meeting_number: str
    meeting_password: str | None = None
    bot_name: str = ""
    join_url: str | None = None
    priority: str = "normal"
    status: BotStatus = BotStatus.INITIALIZING
    process: BotProcess | None = None
    audio_buffer: list[bytes] = field(default_factory=list)
    transcript_segments: list[TranscriptSegment] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    start_time: datetime | None = None
    last_health_check: datetime | None = None
    error: str | None = None
    retry_count: int = 0
    retries_exhausted: bool = False
    stats: BotStats = field(default_factory=BotStats)
    sample_rate: int = 16_000
    channels: int = 1
    speaker_id: str | None = None
    speaker_name: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    flush_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def uptime(self, now: datetime | None = None) -> float:
        """Seconds since the bot first reported connected (0 if never)."""
        if self.start_time is None:
            return 0.0
        return ((now or utcnow()) - self.start_time).total_seconds()

    def last_seen(self) -> datetime:
        """Most recent liveness timestamp, falling back to creation time."""
        return self.last_health_check or self.created_at


class BotRegistry:
    """Instance-scoped store of bots keyed by bot ID and meeting session ID."""

    def __init__(self) -> None:
        self._bots: dict[str, BotInstance] = {}
        self._by_session: dict[str, str] = {}

    def add(self, instance: BotInstance) -> None:
        """Track a new instance; the session index points at the newest bot."""
        if instance.id in self._bots:
            raise ValueError(f"Bot {instance.id} is already registered")
        self._bots[instance.id] = instance
        self._by_session[instance.meeting_session_id] = instance.id

    def remove(self, bot_id: str) -> BotInstance | None:
        """Stop tracking a bot. Returns the removed instance, if any."""
        instance = self._bots.pop(bot_id, None)
        if instance is not None and self._by_session.get(instance.meeting_session_id) == bot_id:
            del self._by_session[instance.meeting_session_id]
        return instance

    def get(self, bot_id: str) -> BotInstance | None:
        return self._bots.get(bot_id)

    def get_by_session(self, meeting_session_id: str) -> BotInstance | None:
        bot_id = self._by_session.get(meeting_session_id)
        return self._bots.get(bot_id) if bot_id else None

    def active_for_session(self, meeting_session_id: str) -> BotInstance | None:
        """The active bot for a meeting session, or None."""
        for instance in self._bots.values():
            if instance.meeting_session_id == meeting_session_id and instance.is_active:
                return instance
        return None

    def all(self) -> list[BotInstance]:
        """Snapshot of every tracked instance (safe to iterate while mutating)."""
        return list(self._bots.values())

    def active(self) -> list[BotInstance]:
        return [bot for bot in self._bots.values() if bot.is_active]

    def __len__(self) -> int:
        return len(self._bots)

    def __contains__(self, bot_id: object) -> bool:
        return bot_id in self._bots
