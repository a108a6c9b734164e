"""Tests for exponential-backoff reconnection."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.meetbot.bots.messages import StatusMessage
from src.meetbot.bots.reconnect import ReconnectionManager, backoff_delay, retry_task_name
from src.meetbot.bots.registry import BotInstance, BotRegistry
from src.meetbot.bots.schemas import BotStatus
from src.meetbot.bots.supervisor import ProcessSupervisor
from src.meetbot.core.scheduling import TaskScheduler
from src.meetbot.events.emitter import EventEmitter
from src.meetbot.events.schemas import EventType
from tests.fakes import FakeProcessFactory, wait_until


class Harness:
    """ReconnectionManager wired to a real supervisor and scheduler."""

    def __init__(self, settings, factory: FakeProcessFactory):
        self.factory = factory
        self.registry = BotRegistry()
        self.scheduler = TaskScheduler()
        self.events = EventEmitter()
        self.received = []
        self.events.on("*", self.received.append)
        self.pipeline = MagicMock()
        self.pipeline.flush = AsyncMock(return_value=None)
        self.credentials_issued = 0
        self.delays: list[float] = []

        real_after = self.scheduler.after

        def spy_after(name, delay, fn):
            self.delays.append(delay)
            return real_after(name, delay, fn)

        self.scheduler.after = spy_after

        async def on_message(instance, message):
            if isinstance(message, StatusMessage):
                instance.status = message.status

        async def on_exit(instance, code):
            if code:
                await self.reconnector.handle_failure(instance, reason=f"exit {code}")

        self.supervisor = ProcessSupervisor(settings, self.pipeline, on_message, on_exit, process_factory=factory)
        self.reconnector = ReconnectionManager(
            self.registry,
            self.supervisor,
            self.pipeline,
            self.scheduler,
            self.events,
            credentials=self._credential,
            settings=settings,
        )

    def _credential(self, instance):
        self.credentials_issued += 1
        return f"jwt-{self.credentials_issued}"

    def add_bot(self, status=BotStatus.ERROR) -> BotInstance:
        bot = BotInstance(id="bot_1", meeting_session_id="session-1", meeting_number="123456", status=status)
        self.registry.add(bot)
        return bot


# ── Backoff ─────────────────────────────────────────────────────────────────


@pytest.mark.parametrize("attempt, expected", [(1, 5.0), (2, 10.0), (3, 20.0), (4, 40.0)])
def test_backoff_doubles_per_attempt(attempt, expected):
    assert backoff_delay(attempt, 5000) == expected


# ── handle_failure ──────────────────────────────────────────────────────────


class TestHandleFailure:
    @pytest.mark.asyncio
    async def test_schedules_first_retry(self, make_settings):
        harness = Harness(make_settings(BOT_RETRY_DELAY_MS=60_000), FakeProcessFactory())
        bot = harness.add_bot()

        delay = await harness.reconnector.handle_failure(bot, reason="crash")

        assert delay == 60.0
        assert bot.status == BotStatus.RECONNECTING
        assert bot.retry_count == 1
        assert bot.stats.reconnects == 1
        assert harness.reconnector.is_pending(bot)
        assert retry_task_name("bot_1") in harness.scheduler.names()
        await harness.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_pending_retry_is_not_duplicated(self, make_settings):
        harness = Harness(make_settings(BOT_RETRY_DELAY_MS=60_000), FakeProcessFactory())
        bot = harness.add_bot()

        await harness.reconnector.handle_failure(bot)
        bot.status = BotStatus.ERROR
        assert await harness.reconnector.handle_failure(bot) is None
        assert bot.retry_count == 1
        await harness.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_leaving_bot_is_not_retried(self, settings):
        harness = Harness(settings, FakeProcessFactory())
        bot = harness.add_bot(status=BotStatus.LEAVING)

        assert await harness.reconnector.handle_failure(bot) is None
        assert bot.retry_count == 0
        assert harness.delays == []

    @pytest.mark.asyncio
    async def test_untracked_bot_is_not_retried(self, settings):
        harness = Harness(settings, FakeProcessFactory())
        bot = BotInstance(id="ghost", meeting_session_id="s", meeting_number="1", status=BotStatus.ERROR)

        assert await harness.reconnector.handle_failure(bot) is None

    @pytest.mark.asyncio
    async def test_ceiling_reached_gives_up(self, settings):
        harness = Harness(settings, FakeProcessFactory())
        bot = harness.add_bot()
        bot.retry_count = 3

        assert await harness.reconnector.handle_failure(bot) is None

        assert bot.status == BotStatus.ERROR
        assert bot.retries_exhausted
        assert "exceeded max retries" in bot.error
        errors = [e for e in harness.received if e.event_type == EventType.BOT_ERROR]
        assert len(errors) == 1
        assert errors[0].data["fatal"] is True

        # exhausted bots are never rescheduled
        assert await harness.reconnector.handle_failure(bot) is None
        assert harness.delays == []

    @pytest.mark.asyncio
    async def test_cancel_prevents_attempt(self, make_settings):
        harness = Harness(make_settings(BOT_RETRY_DELAY_MS=20), FakeProcessFactory(auto_connect=True))
        bot = harness.add_bot()

        await harness.reconnector.handle_failure(bot)
        assert harness.reconnector.cancel(bot)
        await asyncio.sleep(0.05)

        assert harness.factory.processes == []
        assert not harness.reconnector.is_pending(bot)


# ── Attempts ────────────────────────────────────────────────────────────────


class TestAttempt:
    @pytest.mark.asyncio
    async def test_successful_retry_reconnects(self, settings):
        harness = Harness(settings, FakeProcessFactory(auto_connect=True))
        bot = harness.add_bot()
        bot.error = "crashed"

        await harness.reconnector.handle_failure(bot)
        await wait_until(lambda: bot.status == BotStatus.CONNECTED)

        assert len(harness.factory.processes) == 1
        assert harness.factory.latest.env["ZOOM_JWT"] == "jwt-1"
        assert bot.error is None
        assert bot.retry_count == 1
        await wait_until(lambda: harness.pipeline.start.called)
        harness.pipeline.start.assert_called_once_with(bot)

    @pytest.mark.asyncio
    async def test_retry_replaces_lingering_process(self, settings):
        harness = Harness(settings, FakeProcessFactory(auto_connect=True))
        bot = harness.add_bot()
        old = harness.factory(["node"], {})
        await old.spawn()
        bot.process = old

        await harness.reconnector.handle_failure(bot)
        await wait_until(lambda: bot.status == BotStatus.CONNECTED and bot.process is not old)

        assert old.killed

    @pytest.mark.asyncio
    async def test_failed_attempts_back_off_until_ceiling(self, settings):
        harness = Harness(settings, FakeProcessFactory(spawn_error=OSError("no runtime")))
        bot = harness.add_bot()

        await harness.reconnector.handle_failure(bot)
        await wait_until(lambda: bot.retries_exhausted)

        assert harness.delays == [0.01, 0.02, 0.04]
        assert bot.retry_count == 3
        assert bot.status == BotStatus.ERROR
        assert harness.credentials_issued == 3
        await wait_until(lambda: not harness.scheduler.names())
