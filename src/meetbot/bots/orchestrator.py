"""BotOrchestrator: join coordination and the public bot API.

Owns the instance-scoped registry and wires together the process
supervisor, audio pipeline, reconnection manager, health monitor,
cleanup janitor, event emitter and timer scheduler.

Join order:
1. Reject when SDK credentials are missing (ConfigurationError)
2. Reject a second join for the same meeting number inside
   JOIN_RATE_LIMIT_MS (RateLimitError)
3. Reject when MAX_CONCURRENT_BOTS bots are active (CapacityError)
4. Return the existing bot when the session already has an active one
5. Register a new bot, spawn its process (bot.joined), wait for it to
   connect, start its audio flush timer

A failed join leaves the bot in error, hands it to the reconnection
manager when auto-reconnect is on, and re-raises to the caller.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any

import structlog
from pydantic.alias_generators import to_camel

from src.meetbot.audio.pipeline import AudioPipeline
from src.meetbot.audio.transcription import WhisperClient
from src.meetbot.bots.exceptions import (
    CapacityError,
    ConfigurationError,
    RateLimitError,
)
from src.meetbot.bots.health import HEALTH_TASK_NAME, HealthMonitor
from src.meetbot.bots.janitor import CLEANUP_TASK_NAME, CleanupJanitor
from src.meetbot.bots.messages import (
    AudioMessage,
    BotMessage,
    ErrorMessage,
    HealthMessage,
    ParticipantMessage,
    SpeakerMessage,
    StatusMessage,
)
from src.meetbot.bots.process import ProcessFactory
from src.meetbot.bots.reconnect import ReconnectionManager
from src.meetbot.bots.registry import BotInstance, BotRegistry, utcnow
from src.meetbot.bots.schemas import (
    CONNECTED_STATUSES,
    BotHealthStatus,
    BotStats,
    BotStatus,
    JoinRequest,
    TranscriptSegment,
)
from src.meetbot.bots.supervisor import ProcessSupervisor
from src.meetbot.config import Settings, get_settings
from src.meetbot.core import monitoring
from src.meetbot.core.scheduling import TaskScheduler
from src.meetbot.core.security import create_sdk_token
from src.meetbot.events.emitter import EventEmitter
from src.meetbot.events.schemas import EventType

logger = structlog.get_logger(__name__)

# camelCase wire name -> BotStats field, for stats merged from health/status
_STATS_WIRE_FIELDS = {to_camel(name): name for name in BotStats.model_fields}


class BotOrchestrator:
    """Manages meeting bots from join to purge.

    Args:
        settings: Orchestrator settings; defaults to get_settings().
        process_factory: Builds bot process handles; defaults to real
            OS subprocesses running BOT_RUNNER_COMMAND.
        transcriber: Transcription client; defaults to a WhisperClient
            built from settings.
        emitter: EventEmitter subscribers attach to.
        scheduler: TaskScheduler holding every background timer.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        process_factory: ProcessFactory | None = None,
        transcriber: Any = None,
        emitter: EventEmitter | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.events = emitter or EventEmitter()
        self._scheduler = scheduler or TaskScheduler()
        self._registry = BotRegistry()
        # meeting_number -> monotonic time of the last accepted join
        self._last_join: dict[str, float] = {}
        self._rate_window = self._settings.JOIN_RATE_LIMIT_MS / 1000.0

        if transcriber is None:
            transcriber = WhisperClient.from_settings(self._settings)
        self._pipeline = AudioPipeline(self._scheduler, transcriber, self.events, self._settings)
        self._supervisor = ProcessSupervisor(
            self._settings,
            self._pipeline,
            on_message=self._handle_message,
            on_unexpected_exit=self._handle_unexpected_exit,
            process_factory=process_factory,
        )
        self._reconnector = ReconnectionManager(
            self._registry,
            self._supervisor,
            self._pipeline,
            self._scheduler,
            self.events,
            credentials=self._credential,
            settings=self._settings,
        )
        self._health = HealthMonitor(self._registry, self._reconnector, self.events, self._settings)
        self._janitor = CleanupJanitor(
            self._registry,
            self._supervisor,
            self._pipeline,
            self._scheduler,
            self._settings,
        )
        self._started = False

    # ── Lifecycle ───────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        return self._settings.has_sdk_credentials()

    async def start(self) -> bool:
        """Start the health monitor and cleanup janitor loops.

        Returns False (and starts nothing) when SDK credentials are missing.
        """
        if not self.is_configured():
            logger.warning("orchestrator.not_configured", reason="ZOOM_SDK_KEY/ZOOM_SDK_SECRET missing")
            return False
        if self._started:
            return True
        if not self._settings.has_transcription_backend():
            logger.warning("orchestrator.transcription_disabled")

        self._scheduler.every(HEALTH_TASK_NAME, self._health.interval, self._health.check)
        self._scheduler.every(CLEANUP_TASK_NAME, self._janitor.interval, self._janitor.sweep)
        self._started = True
        logger.info(
            "orchestrator.started",
            max_concurrent_bots=self._settings.MAX_CONCURRENT_BOTS,
            health_interval_s=self._health.interval,
            cleanup_interval_s=self._janitor.interval,
        )
        return True

    async def shutdown(self) -> None:
        """Cancel every timer, then stop all tracked bots concurrently."""
        logger.info("orchestrator.shutting_down", bots=len(self._registry))
        await self._scheduler.shutdown()
        self._started = False

        instances = self._registry.all()
        results = await asyncio.gather(
            *(self.stop_bot(instance.id) for instance in instances),
            return_exceptions=True,
        )
        for instance, result in zip(instances, results):
            if isinstance(result, BaseException):
                logger.error(
                    "orchestrator.stop_failed",
                    bot_id=instance.id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
        await self.events.drain()
        logger.info("orchestrator.shutdown_complete")

    # ── Join ────────────────────────────────────────────────────────────

    async def join_meeting(self, request: JoinRequest) -> BotInstance:
        """Place a bot into a meeting and wait until it is connected.

        Raises:
            ConfigurationError: SDK credentials are missing.
            RateLimitError: Same meeting number joined too recently.
            CapacityError: MAX_CONCURRENT_BOTS reached.
            ProcessSpawnError: The bot process could not be started.
            ConnectionTimeoutError: The bot did not connect in time.
            UnexpectedProcessExit: The process died before connecting.
        """
        if not self.is_configured():
            monitoring.bot_joins_total.labels(outcome="unconfigured").inc()
            raise ConfigurationError("Meeting SDK credentials are not configured")

        now = time.monotonic()
        self._prune_join_times(now)
        last = self._last_join.get(request.meeting_number)
        if last is not None and now - last < self._rate_window:
            monitoring.bot_joins_total.labels(outcome="rate_limited").inc()
            raise RateLimitError(request.meeting_number, self._rate_window - (now - last))

        if len(self._registry.active()) >= self._settings.MAX_CONCURRENT_BOTS:
            monitoring.bot_joins_total.labels(outcome="capacity").inc()
            raise CapacityError(self._settings.MAX_CONCURRENT_BOTS)

        existing = self._registry.active_for_session(request.meeting_session_id)
        if existing is not None:
            monitoring.bot_joins_total.labels(outcome="deduplicated").inc()
            logger.info(
                "orchestrator.bot_already_active",
                bot_id=existing.id,
                meeting_session_id=request.meeting_session_id,
            )
            return existing

        instance = BotInstance(
            id=f"bot_{uuid.uuid4().hex[:8]}",
            meeting_session_id=request.meeting_session_id,
            meeting_number=request.meeting_number,
            meeting_password=request.meeting_password,
            bot_name=request.bot_name or self._settings.BOT_DEFAULT_NAME,
            join_url=request.join_url,
            priority=request.priority,
            sample_rate=self._settings.AUDIO_SAMPLE_RATE,
            channels=self._settings.AUDIO_CHANNELS,
        )
        self._registry.add(instance)
        self._last_join[request.meeting_number] = now
        self._update_active_gauge()
        logger.info(
            "orchestrator.joining",
            bot_id=instance.id,
            meeting_session_id=instance.meeting_session_id,
            meeting_number=instance.meeting_number,
            priority=instance.priority,
        )

        try:
            await self._supervisor.start(instance, self._credential(instance), on_spawned=self._on_spawned)
        except asyncio.CancelledError:
            self._fail_join(instance, "join cancelled")
            raise
        except Exception as exc:
            self._fail_join(instance, str(exc))
            logger.error("orchestrator.join_failed", bot_id=instance.id, error=str(exc))
            if self._settings.BOT_AUTO_RECONNECT:
                await self._reconnector.handle_failure(instance, reason=str(exc))
            raise

        self._pipeline.start(instance)
        monitoring.bot_joins_total.labels(outcome="ok").inc()
        logger.info("orchestrator.bot_connected", bot_id=instance.id, status=instance.status.value)
        return instance

    def _prune_join_times(self, now: float) -> None:
        """Forget meeting numbers whose rate-limit window has passed."""
        expired = [number for number, at in self._last_join.items() if now - at >= self._rate_window]
        for number in expired:
            del self._last_join[number]

    def _on_spawned(self, instance: BotInstance) -> None:
        self.events.emit(
            EventType.BOT_JOINED,
            instance.id,
            instance.meeting_session_id,
            meeting_number=instance.meeting_number,
            bot_name=instance.bot_name,
            priority=instance.priority,
        )

    def _fail_join(self, instance: BotInstance, reason: str) -> None:
        # a concurrent stop_bot owns the final status
        if instance.status not in (BotStatus.LEAVING, BotStatus.DISCONNECTED):
            instance.status = BotStatus.ERROR
            instance.error = instance.error or reason
            self._supervisor.terminate(instance)
        self._update_active_gauge()
        monitoring.bot_joins_total.labels(outcome="error").inc()

    def _credential(self, instance: BotInstance) -> str:
        return create_sdk_token(
            self._settings.ZOOM_SDK_KEY,
            self._settings.ZOOM_SDK_SECRET,
            instance.meeting_number,
            ttl_seconds=self._settings.SDK_TOKEN_TTL_SECONDS,
        )

    # ── Stop ────────────────────────────────────────────────────────────

    async def stop_bot(self, bot_id: str) -> None:
        """Leave the meeting, flush remaining audio and stop tracking the bot."""
        instance = self._registry.get(bot_id)
        if instance is None:
            logger.warning("orchestrator.bot_not_found", bot_id=bot_id)
            return

        logger.info("orchestrator.stopping_bot", bot_id=bot_id)
        self._reconnector.cancel(instance)
        async with instance.lock:
            instance.status = BotStatus.LEAVING
        self._pipeline.stop(instance)

        try:
            await self._supervisor.stop(instance)
        finally:
            async with instance.lock:
                instance.status = BotStatus.DISCONNECTED
            self._janitor.release(instance)

        duration_minutes = round(instance.uptime() / 60.0, 2)
        self.events.emit(
            EventType.BOT_LEFT,
            instance.id,
            instance.meeting_session_id,
            transcript_segments=list(instance.transcript_segments),
            duration_minutes=duration_minutes,
            stats=instance.stats.model_copy(),
        )
        logger.info(
            "orchestrator.bot_stopped",
            bot_id=bot_id,
            segments=len(instance.transcript_segments),
            duration_minutes=duration_minutes,
        )

    # ── Process messages ────────────────────────────────────────────────

    async def _handle_message(self, instance: BotInstance, message: BotMessage) -> None:
        if isinstance(message, StatusMessage):
            await self._on_status(instance, message)
        elif isinstance(message, AudioMessage):
            await self._on_audio(instance, message)
        elif isinstance(message, ParticipantMessage):
            await self._on_participant(instance, message)
        elif isinstance(message, SpeakerMessage):
            await self._on_speaker(instance, message)
        elif isinstance(message, HealthMessage):
            await self._on_health(instance, message)
        elif isinstance(message, ErrorMessage):
            await self._on_error(instance, message)

    async def _on_status(self, instance: BotInstance, message: StatusMessage) -> None:
        async with instance.lock:
            if instance.status == BotStatus.LEAVING and message.status != BotStatus.DISCONNECTED:
                logger.debug("orchestrator.status_ignored_while_leaving", bot_id=instance.id, status=message.status.value)
                return
            previous = instance.status
            instance.status = message.status
            if message.stats:
                self._merge_stats(instance, message.stats)
            became_connected = message.status in CONNECTED_STATUSES and previous not in CONNECTED_STATUSES
            if became_connected:
                now = utcnow()
                if instance.start_time is None:
                    instance.start_time = now
                instance.last_health_check = now

        logger.info(
            "orchestrator.status_changed",
            bot_id=instance.id,
            previous=previous.value,
            status=message.status.value,
        )
        self._update_active_gauge()
        if became_connected:
            self.events.emit(
                EventType.BOT_CONNECTED,
                instance.id,
                instance.meeting_session_id,
                status=message.status.value,
            )

    async def _on_audio(self, instance: BotInstance, message: AudioMessage) -> None:
        try:
            self._pipeline.ingest(instance, message)
        except ValueError as exc:
            instance.stats.errors += 1
            logger.warning("orchestrator.invalid_audio", bot_id=instance.id, error=str(exc))

    async def _on_participant(self, instance: BotInstance, message: ParticipantMessage) -> None:
        async with instance.lock:
            if message.action == "joined":
                instance.stats.participant_count += 1
            else:
                instance.stats.participant_count = max(0, instance.stats.participant_count - 1)
            count = instance.stats.participant_count

        self.events.emit(
            EventType.PARTICIPANT_CHANGED,
            instance.id,
            instance.meeting_session_id,
            action=message.action,
            participant=message.participant.model_dump(),
            participant_count=count,
        )

    async def _on_speaker(self, instance: BotInstance, message: SpeakerMessage) -> None:
        async with instance.lock:
            instance.speaker_id = str(message.speaker_id) if message.speaker_id is not None else None
            instance.speaker_name = message.speaker_name

        self.events.emit(
            EventType.SPEAKER_CHANGED,
            instance.id,
            instance.meeting_session_id,
            speaker_id=instance.speaker_id,
            speaker_name=instance.speaker_name,
        )

    async def _on_health(self, instance: BotInstance, message: HealthMessage) -> None:
        async with instance.lock:
            instance.last_health_check = utcnow()
            if message.stats:
                self._merge_stats(instance, message.stats)
            if message.participant_count is not None:
                instance.stats.participant_count = max(0, message.participant_count)

    async def _on_error(self, instance: BotInstance, message: ErrorMessage) -> None:
        async with instance.lock:
            instance.stats.errors += 1
            instance.error = message.error
            if instance.is_active:
                instance.status = BotStatus.ERROR

        logger.error("orchestrator.bot_error", bot_id=instance.id, error=message.error)
        self._update_active_gauge()
        self.events.emit(
            EventType.BOT_ERROR,
            instance.id,
            instance.meeting_session_id,
            error=message.error,
            fatal=False,
        )

    @staticmethod
    def _merge_stats(instance: BotInstance, stats: dict[str, Any]) -> None:
        for key, value in stats.items():
            name = _STATS_WIRE_FIELDS.get(key, key)
            if name in BotStats.model_fields and isinstance(value, (int, float)):
                setattr(instance.stats, name, value)

    async def _handle_unexpected_exit(self, instance: BotInstance, code: int | None) -> None:
        self._update_active_gauge()
        if code == 0:
            logger.info("orchestrator.bot_disconnected", bot_id=instance.id)
            return

        self.events.emit(
            EventType.BOT_ERROR,
            instance.id,
            instance.meeting_session_id,
            error=instance.error,
            exit_code=code,
            fatal=False,
        )
        if self._settings.BOT_AUTO_RECONNECT:
            await self._reconnector.handle_failure(instance, reason=f"exit code {code}")

    # ── Queries ─────────────────────────────────────────────────────────

    def get_bot(self, bot_id: str) -> BotInstance | None:
        return self._registry.get(bot_id)

    def get_bot_by_meeting_session(self, meeting_session_id: str) -> BotInstance | None:
        return self._registry.get_by_session(meeting_session_id)

    def get_active_bots(self) -> list[BotInstance]:
        return self._registry.active()

    def get_transcript(self, bot_id: str) -> list[TranscriptSegment]:
        """Transcript segments for a bot in append order (empty if unknown)."""
        instance = self._registry.get(bot_id)
        return list(instance.transcript_segments) if instance else []

    def get_full_transcript_text(self, bot_id: str) -> str:
        return " ".join(segment.text for segment in self.get_transcript(bot_id))

    def get_health_status(self) -> list[BotHealthStatus]:
        """One health row per tracked bot."""
        now = utcnow()
        return [
            BotHealthStatus(
                bot_id=instance.id,
                status=instance.status,
                uptime=instance.uptime(now),
                last_health_check=instance.last_seen(),
                stats=instance.stats.model_copy(),
                healthy=self._health.is_healthy(instance, now),
            )
            for instance in self._registry.all()
        ]

    async def request_status(self, bot_id: str) -> bool:
        """Ask a bot's process to report its current status."""
        instance = self._registry.get(bot_id)
        if instance is None:
            return False
        return await self._supervisor.request_status(instance)

    def _update_active_gauge(self) -> None:
        monitoring.bots_active.set(len(self._registry.active()))
