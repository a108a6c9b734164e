"""Exponential-backoff reconnection for failed bots.

handle_failure() is the single entry point for every recovery path
(crashed process, failed join, failed health check). It either schedules
one cancellable retry named ``retry:<bot_id>`` after
``BOT_RETRY_DELAY_MS * 2 ** (retry_count - 1)`` or, once the retry
ceiling is reached, leaves the bot permanently in error.

A retry regenerates the SDK credential, kills any lingering process and
re-runs the supervisor start sequence. A failed retry feeds straight
back into handle_failure().
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from src.meetbot.bots.exceptions import MaxRetriesExceeded
from src.meetbot.bots.registry import BotInstance, BotRegistry
from src.meetbot.bots.schemas import CONNECTED_STATUSES, BotStatus
from src.meetbot.core import monitoring
from src.meetbot.core.scheduling import TaskScheduler
from src.meetbot.events.emitter import EventEmitter
from src.meetbot.events.schemas import EventType

if TYPE_CHECKING:
    from src.meetbot.audio.pipeline import AudioPipeline
    from src.meetbot.bots.supervisor import ProcessSupervisor

logger = structlog.get_logger(__name__)


def retry_task_name(bot_id: str) -> str:
    return f"retry:{bot_id}"


def backoff_delay(retry_count: int, base_delay_ms: int) -> float:
    """Delay in seconds before the ``retry_count``-th attempt (1-based)."""
    return base_delay_ms * (2 ** max(retry_count - 1, 0)) / 1000.0


class ReconnectionManager:
    """Schedules bounded, exponentially spaced restarts of failed bots.

    Args:
        registry: BotRegistry; bots no longer tracked are never retried.
        supervisor: ProcessSupervisor used to restart the process.
        pipeline: AudioPipeline whose flush timer is (re)started on success.
        scheduler: TaskScheduler holding the pending retry timers.
        emitter: EventEmitter for bot.error when retries run out.
        credentials: Callable returning a fresh SDK credential for a bot.
        settings: Orchestrator settings (retry ceiling and base delay).
    """

    def __init__(
        self,
        registry: BotRegistry,
        supervisor: ProcessSupervisor,
        pipeline: AudioPipeline,
        scheduler: TaskScheduler,
        emitter: EventEmitter,
        credentials: Callable[[BotInstance], str],
        settings: Any,
    ) -> None:
        self._registry = registry
        self._supervisor = supervisor
        self._pipeline = pipeline
        self._scheduler = scheduler
        self._emitter = emitter
        self._credentials = credentials
        self._max_retries = settings.BOT_MAX_RETRIES
        self._base_delay_ms = settings.BOT_RETRY_DELAY_MS

    def is_pending(self, instance: BotInstance) -> bool:
        return self._scheduler.is_pending(retry_task_name(instance.id))

    def cancel(self, instance: BotInstance) -> bool:
        """Cancel a pending (or running) retry for this bot."""
        return self._scheduler.cancel(retry_task_name(instance.id))

    async def handle_failure(self, instance: BotInstance, reason: str = "") -> float | None:
        """Schedule the next retry, or give up once the ceiling is reached.

        Returns:
            The scheduled delay in seconds, or None if nothing was scheduled.
        """
        async with instance.lock:
            if instance.id not in self._registry or instance.status == BotStatus.LEAVING:
                return None
            if instance.retries_exhausted or self.is_pending(instance):
                return None

            if instance.retry_count >= self._max_retries:
                error = MaxRetriesExceeded(instance.id, self._max_retries)
                instance.status = BotStatus.ERROR
                instance.retries_exhausted = True
                instance.error = str(error)
                logger.warning(
                    "reconnect.max_retries_exceeded",
                    bot_id=instance.id,
                    retries=instance.retry_count,
                    last_reason=reason,
                )
                self._emitter.emit(
                    EventType.BOT_ERROR,
                    instance.id,
                    instance.meeting_session_id,
                    error=str(error),
                    fatal=True,
                )
                return None

            instance.status = BotStatus.RECONNECTING
            instance.retry_count += 1
            instance.stats.reconnects += 1
            delay = backoff_delay(instance.retry_count, self._base_delay_ms)

        monitoring.bot_reconnects_total.inc()
        logger.info(
            "reconnect.scheduled",
            bot_id=instance.id,
            attempt=instance.retry_count,
            delay_s=delay,
            reason=reason,
        )
        self._scheduler.after(retry_task_name(instance.id), delay, lambda: self._attempt(instance))
        return delay

    async def _attempt(self, instance: BotInstance) -> None:
        async with instance.lock:
            if instance.id not in self._registry or instance.status != BotStatus.RECONNECTING:
                logger.info("reconnect.skipped", bot_id=instance.id, status=instance.status.value)
                return
            self._supervisor.terminate(instance)

        logger.info("reconnect.attempt", bot_id=instance.id, attempt=instance.retry_count)
        try:
            await self._supervisor.start(instance, self._credentials(instance))
        except Exception as exc:
            logger.warning(
                "reconnect.attempt_failed",
                bot_id=instance.id,
                attempt=instance.retry_count,
                error=str(exc),
            )
            await self.handle_failure(instance, reason=str(exc))
            return

        async with instance.lock:
            if instance.status not in CONNECTED_STATUSES:
                instance.status = BotStatus.CONNECTED
            instance.error = None
        self._pipeline.start(instance)
        logger.info("reconnect.succeeded", bot_id=instance.id, attempt=instance.retry_count)
