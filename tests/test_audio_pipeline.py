"""Tests for per-bot audio buffering and transcription flushes."""

from __future__ import annotations

import asyncio
import base64
import math
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.meetbot.audio.pipeline import AudioPipeline, flush_task_name
from src.meetbot.audio.transcription import TranscriptionResult, WhisperClient
from src.meetbot.audio.wav import HEADER_SIZE, parse_wav_header
from src.meetbot.bots.exceptions import TranscriptionError
from src.meetbot.bots.messages import AudioMessage
from src.meetbot.bots.registry import BotInstance
from src.meetbot.core.scheduling import TaskScheduler
from src.meetbot.events.emitter import EventEmitter
from src.meetbot.events.schemas import BotEvent, EventType
from tests.fakes import FakeTranscriber, wait_until


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def bot():
    return BotInstance(id="bot_1", meeting_session_id="session-1", meeting_number="123456")


@pytest.fixture
def events():
    emitter = EventEmitter()
    emitter.received = []
    emitter.on("*", emitter.received.append)
    return emitter


def _audio(pcm: bytes, duration: float = 100.0, **extra) -> AudioMessage:
    return AudioMessage(data=base64.b64encode(pcm).decode(), duration=duration, **extra)


def _types(events: EventEmitter) -> list[EventType]:
    return [event.event_type for event in events.received]


# ── Ingestion ───────────────────────────────────────────────────────────────


class TestIngest:
    def test_appends_in_arrival_order(self, settings, bot, events):
        pipeline = AudioPipeline(TaskScheduler(), FakeTranscriber(), events, settings)
        pipeline.ingest(bot, _audio(b"\x01" * 10, duration=50))
        pipeline.ingest(bot, _audio(b"\x02" * 20, duration=70, sampleRate=48000, channels=2))

        assert bot.audio_buffer == [b"\x01" * 10, b"\x02" * 20]
        assert bot.stats.audio_chunks == 2
        assert bot.stats.total_audio_duration == 120
        assert bot.sample_rate == 48000
        assert bot.channels == 2
        assert _types(events) == [EventType.AUDIO_CHUNK, EventType.AUDIO_CHUNK]
        assert events.received[1].data["chunk"].data == b"\x02" * 20

    def test_invalid_payload_raises(self, settings, bot, events):
        pipeline = AudioPipeline(TaskScheduler(), FakeTranscriber(), events, settings)
        with pytest.raises(ValueError):
            pipeline.ingest(bot, AudioMessage(data="%%%"))
        assert bot.audio_buffer == []


# ── Flush ───────────────────────────────────────────────────────────────────


class TestFlush:
    @pytest.mark.asyncio
    async def test_small_buffer_discarded_without_call(self, settings, bot, events):
        transcriber = FakeTranscriber()
        pipeline = AudioPipeline(TaskScheduler(), transcriber, events, settings)
        bot.audio_buffer = [b"\x00" * 400, b"\x00" * 500]

        assert await pipeline.flush(bot) is None
        assert bot.audio_buffer == []
        assert transcriber.calls == []

    @pytest.mark.asyncio
    async def test_empty_buffer_is_noop(self, settings, bot, events):
        transcriber = FakeTranscriber()
        pipeline = AudioPipeline(TaskScheduler(), transcriber, events, settings)
        assert await pipeline.flush(bot) is None
        assert transcriber.calls == []

    @pytest.mark.asyncio
    async def test_single_call_with_framed_wav(self, settings, bot, events):
        transcriber = FakeTranscriber([TranscriptionResult(text="  hi there ", confidence=0.9)])
        pipeline = AudioPipeline(TaskScheduler(), transcriber, events, settings)
        bot.audio_buffer = [b"\x01\x00" * 600, b"\x02\x00" * 600]

        segment = await pipeline.flush(bot)

        assert len(transcriber.calls) == 1
        header = parse_wav_header(transcriber.calls[0])
        assert header.sample_rate == 16000
        assert header.data_size == 2400
        assert transcriber.calls[0][HEADER_SIZE:] == b"\x01\x00" * 600 + b"\x02\x00" * 600

        assert segment is not None
        assert segment.text == "hi there"
        assert segment.confidence == 0.9
        assert segment.end_time - segment.start_time == pytest.approx(2400 / 32000)
        assert bot.transcript_segments == [segment]
        assert bot.stats.transcript_segments == 1
        assert bot.audio_buffer == []
        assert _types(events) == [EventType.TRANSCRIPTION_SEGMENT]

    @pytest.mark.asyncio
    async def test_segment_attributed_to_active_speaker(self, settings, bot, events):
        transcriber = FakeTranscriber([TranscriptionResult(text="hello")])
        pipeline = AudioPipeline(TaskScheduler(), transcriber, events, settings)
        bot.speaker_id = "7"
        bot.speaker_name = "Ana"
        bot.audio_buffer = [b"\x00" * 2000]

        segment = await pipeline.flush(bot)
        assert segment.speaker_id == "7"
        assert segment.speaker_name == "Ana"

    @pytest.mark.asyncio
    async def test_failure_counts_error_and_clears_buffer(self, settings, bot, events):
        transcriber = FakeTranscriber([TranscriptionError("backend down")])
        pipeline = AudioPipeline(TaskScheduler(), transcriber, events, settings)
        bot.audio_buffer = [b"\x00" * 2000]

        assert await pipeline.flush(bot) is None
        assert bot.audio_buffer == []
        assert bot.stats.errors == 1
        assert bot.transcript_segments == []
        assert events.received == []

    @pytest.mark.asyncio
    async def test_timeout_counts_error(self, make_settings, bot, events):
        class SlowTranscriber:
            configured = True

            async def transcribe(self, wav_bytes):
                await asyncio.sleep(10)

        pipeline = AudioPipeline(TaskScheduler(), SlowTranscriber(), events, make_settings(TRANSCRIPTION_TIMEOUT_MS=20))
        bot.audio_buffer = [b"\x00" * 2000]

        assert await pipeline.flush(bot) is None
        assert bot.stats.errors == 1

    @pytest.mark.asyncio
    async def test_empty_text_adds_no_segment(self, settings, bot, events):
        pipeline = AudioPipeline(TaskScheduler(), FakeTranscriber([TranscriptionResult(text="   ")]), events, settings)
        bot.audio_buffer = [b"\x00" * 2000]

        assert await pipeline.flush(bot) is None
        assert bot.transcript_segments == []
        assert bot.stats.errors == 0

    @pytest.mark.asyncio
    async def test_unconfigured_transcriber_clears_buffer(self, settings, bot, events):
        transcriber = FakeTranscriber(configured=False)
        pipeline = AudioPipeline(TaskScheduler(), transcriber, events, settings)
        bot.audio_buffer = [b"\x00" * 2000]

        assert await pipeline.flush(bot) is None
        assert bot.audio_buffer == []
        assert transcriber.calls == []

    @pytest.mark.asyncio
    async def test_audio_arriving_during_flush_goes_to_next_flush(self, settings, bot, events):
        gate = asyncio.Event()

        class GatedTranscriber:
            configured = True
            calls = 0

            async def transcribe(self, wav_bytes):
                GatedTranscriber.calls += 1
                await gate.wait()
                return TranscriptionResult(text=f"part {GatedTranscriber.calls}")

        pipeline = AudioPipeline(TaskScheduler(), GatedTranscriber(), events, settings)
        bot.audio_buffer = [b"\x00" * 2000]
        first = asyncio.create_task(pipeline.flush(bot))
        await wait_until(lambda: GatedTranscriber.calls == 1)

        pipeline.ingest(bot, _audio(b"\x00" * 2000))
        assert len(bot.audio_buffer) == 1
        second = asyncio.create_task(pipeline.flush(bot))
        await asyncio.sleep(0)
        assert bot.audio_buffer == []

        gate.set()
        await asyncio.gather(first, second)
        assert [s.text for s in bot.transcript_segments] == ["part 1", "part 2"]


# ── Timer ───────────────────────────────────────────────────────────────────


class TestFlushTimer:
    @pytest.mark.asyncio
    async def test_timer_flushes_periodically(self, make_settings, bot, events):
        transcriber = FakeTranscriber([TranscriptionResult(text="tick")])
        scheduler = TaskScheduler()
        pipeline = AudioPipeline(scheduler, transcriber, events, make_settings(AUDIO_CHUNK_DURATION_MS=10))
        bot.audio_buffer = [b"\x00" * 2000]

        pipeline.start(bot)
        pipeline.start(bot)
        assert scheduler.names() == [flush_task_name("bot_1")]

        await wait_until(lambda: bot.stats.transcript_segments == 1)
        pipeline.stop(bot)
        assert scheduler.names() == []

    @pytest.mark.asyncio
    async def test_stop_lets_running_flush_finish(self, make_settings, bot, events):
        gate = asyncio.Event()
        entered = asyncio.Event()

        class GatedTranscriber:
            configured = True

            async def transcribe(self, wav_bytes):
                entered.set()
                await gate.wait()
                return TranscriptionResult(text="closing remarks")

        scheduler = TaskScheduler()
        pipeline = AudioPipeline(scheduler, GatedTranscriber(), events, make_settings(AUDIO_CHUNK_DURATION_MS=10))
        bot.audio_buffer = [b"\x00" * 2000]
        pipeline.start(bot)
        await asyncio.wait_for(entered.wait(), timeout=1)

        pipeline.stop(bot)
        final = asyncio.create_task(pipeline.flush(bot))
        await asyncio.sleep(0.01)
        assert not final.done()

        gate.set()
        assert await final is None
        assert [s.text for s in bot.transcript_segments] == ["closing remarks"]


# ── Scenario C ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_two_chunks_become_one_segment(settings, bot, events):
    """Two chunks totalling 2000 bytes in one interval -> exactly one segment."""
    pipeline = AudioPipeline(TaskScheduler(), WhisperClient.from_settings(settings), events, settings)
    pipeline.ingest(bot, _audio(b"\x00\x01" * 500))
    pipeline.ingest(bot, _audio(b"\x00\x02" * 500))

    mock_response = httpx.Response(
        200,
        json={"text": "hello world", "avg_logprob": -0.1},
        request=httpx.Request("POST", "https://whisper.example.com"),
    )
    with patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=mock_response) as mock_post:
        await pipeline.flush(bot)

    assert mock_post.call_count == 1
    assert len(bot.transcript_segments) == 1
    assert bot.transcript_segments[0].text == "hello world"
    assert bot.transcript_segments[0].confidence == pytest.approx(math.exp(-0.1))
    assert bot.stats.transcript_segments == 1
    assert bot.audio_buffer == []
