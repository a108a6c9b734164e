"""Per-bot audio buffering and periodic transcription dispatch.

Audio chunks from a bot process are appended to the bot's buffer in
arrival order. A per-bot timer flushes the buffer every
AUDIO_CHUNK_DURATION_MS:

1. Concatenate and clear the buffer (no await between the two)
2. Discard buffers under MIN_AUDIO_BYTES
3. Frame the PCM as WAV and compute the window's start/end time
4. Transcribe with a bounded timeout; append a TranscriptSegment and
   emit transcription.segment when text comes back
5. On failure: log, count in stats.errors, keep going

Flushes for one bot run one at a time in the order they cleared the
buffer (flush_lock is FIFO), so segments are appended in audio order.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog

from src.meetbot.audio.transcription import TranscriptionResult, WhisperClient
from src.meetbot.audio.wav import frame_pcm, pcm_duration
from src.meetbot.bots.exceptions import TranscriptionError
from src.meetbot.bots.messages import AudioMessage
from src.meetbot.bots.registry import BotInstance
from src.meetbot.bots.schemas import AudioChunk, TranscriptSegment
from src.meetbot.core import monitoring
from src.meetbot.core.scheduling import TaskScheduler
from src.meetbot.events.emitter import EventEmitter
from src.meetbot.events.schemas import EventType

logger = structlog.get_logger(__name__)


def flush_task_name(bot_id: str) -> str:
    return f"flush:{bot_id}"


class AudioPipeline:
    """Buffers audio per bot and turns each flush into one transcription call.

    Args:
        scheduler: TaskScheduler owning the per-bot flush timers.
        transcriber: WhisperClient (or any object with ``configured`` and
            ``async transcribe(wav_bytes)``). Unconfigured clients make
            flushes no-ops after the buffer is cleared.
        emitter: EventEmitter for audio.chunk and transcription.segment.
        settings: Orchestrator settings.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        transcriber: WhisperClient | Any,
        emitter: EventEmitter,
        settings: Any,
    ) -> None:
        self._scheduler = scheduler
        self._transcriber = transcriber
        self._emitter = emitter
        self._interval = settings.AUDIO_CHUNK_DURATION_MS / 1000.0
        self._min_bytes = settings.MIN_AUDIO_BYTES
        self._timeout = settings.TRANSCRIPTION_TIMEOUT_MS / 1000.0

    # ── Timer control ───────────────────────────────────────────────────

    def start(self, instance: BotInstance) -> None:
        """Start the flush timer for a bot (no-op if already running)."""
        name = flush_task_name(instance.id)
        if name in self._scheduler.names():
            return
        self._scheduler.every(name, self._interval, lambda: self._tick(instance))
        logger.debug("audio.flush_timer_started", bot_id=instance.id, interval_s=self._interval)

    def stop(self, instance: BotInstance) -> None:
        """Stop the flush timer. A flush already running still completes."""
        self._scheduler.cancel(flush_task_name(instance.id))

    async def _tick(self, instance: BotInstance) -> None:
        # cancelling the timer must not drop a window already taken off the buffer
        await asyncio.shield(self.flush(instance))

    # ── Ingestion ───────────────────────────────────────────────────────

    def ingest(self, instance: BotInstance, message: AudioMessage) -> AudioChunk:
        """Append one audio message to the bot's buffer.

        Raises:
            ValueError: If the payload is not valid base64.
        """
        pcm = message.pcm()
        if message.sample_rate:
            instance.sample_rate = message.sample_rate
        if message.channels:
            instance.channels = message.channels

        instance.audio_buffer.append(pcm)
        instance.stats.audio_chunks += 1
        instance.stats.total_audio_duration += message.duration or 0.0
        monitoring.audio_chunks_total.inc()

        chunk = AudioChunk(
            data=pcm,
            timestamp=message.timestamp,
            duration=message.duration or 0.0,
            sample_rate=instance.sample_rate,
            channels=instance.channels,
        )
        self._emitter.emit(
            EventType.AUDIO_CHUNK,
            instance.id,
            instance.meeting_session_id,
            chunk=chunk,
        )
        return chunk

    # ── Flush ───────────────────────────────────────────────────────────

    async def flush(self, instance: BotInstance) -> TranscriptSegment | None:
        """Drain the buffer into at most one transcription call.

        Never raises for transcription problems; returns the appended
        segment, or None when nothing was transcribed. A flush with nothing
        to send still waits for any earlier flush of the same bot, so the
        final flush before leave returns only once the transcript is
        complete.
        """
        chunks = instance.audio_buffer
        instance.audio_buffer = []
        audio = b"".join(chunks)

        if len(audio) < self._min_bytes:
            if audio:
                logger.debug("audio.flush_skipped", bot_id=instance.id, bytes=len(audio))
            async with instance.flush_lock:
                return None

        end_time = time.time()
        duration = pcm_duration(len(audio), instance.sample_rate, instance.channels)
        window = (end_time - duration, end_time)
        speaker = (instance.speaker_id, instance.speaker_name)

        async with instance.flush_lock:
            return await self._transcribe(instance, audio, window, speaker)

    async def _transcribe(
        self,
        instance: BotInstance,
        audio: bytes,
        window: tuple[float, float],
        speaker: tuple[str | None, str | None],
    ) -> TranscriptSegment | None:
        if self._transcriber is None or not self._transcriber.configured:
            logger.debug("audio.transcription_unconfigured", bot_id=instance.id)
            return None

        wav_bytes = frame_pcm(audio, instance.sample_rate, instance.channels)
        started = time.monotonic()
        try:
            result: TranscriptionResult = await asyncio.wait_for(
                self._transcriber.transcribe(wav_bytes),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            self._record_failure(instance, TranscriptionError(f"timed out after {self._timeout:.0f}s"))
            return None
        except Exception as exc:
            self._record_failure(instance, exc)
            return None
        finally:
            monitoring.transcription_duration_seconds.observe(time.monotonic() - started)

        text = (result.text or "").strip()
        if not text:
            monitoring.transcription_requests_total.labels(status="empty").inc()
            return None

        monitoring.transcription_requests_total.labels(status="ok").inc()
        segment = TranscriptSegment(
            text=text,
            start_time=window[0],
            end_time=window[1],
            speaker_id=speaker[0],
            speaker_name=speaker[1],
            confidence=result.confidence,
        )
        instance.transcript_segments.append(segment)
        instance.stats.transcript_segments += 1

        self._emitter.emit(
            EventType.TRANSCRIPTION_SEGMENT,
            instance.id,
            instance.meeting_session_id,
            segment=segment,
        )
        logger.debug("audio.transcribed", bot_id=instance.id, preview=text[:50])
        return segment

    def _record_failure(self, instance: BotInstance, exc: BaseException) -> None:
        instance.stats.errors += 1
        monitoring.transcription_requests_total.labels(status="error").inc()
        logger.warning(
            "audio.transcription_failed",
            bot_id=instance.id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
