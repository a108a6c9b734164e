"""Purges stale terminal-state bots and releases their resources."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from src.meetbot.bots.reconnect import retry_task_name
from src.meetbot.bots.registry import BotInstance, BotRegistry, utcnow
from src.meetbot.bots.schemas import TERMINAL_STATUSES
from src.meetbot.core import monitoring
from src.meetbot.core.scheduling import TaskScheduler

if TYPE_CHECKING:
    from src.meetbot.audio.pipeline import AudioPipeline
    from src.meetbot.bots.supervisor import ProcessSupervisor

logger = structlog.get_logger(__name__)

CLEANUP_TASK_NAME = "cleanup-janitor"


class CleanupJanitor:
    """Removes disconnected/errored bots that have been quiet for too long.

    release() is also the shared teardown used by an explicit stop: cancel
    the bot's timers, kill a lingering process, drop it from the registry.
    """

    def __init__(
        self,
        registry: BotRegistry,
        supervisor: ProcessSupervisor,
        pipeline: AudioPipeline,
        scheduler: TaskScheduler,
        settings: Any,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._supervisor = supervisor
        self._pipeline = pipeline
        self._scheduler = scheduler
        self._clock = clock
        self.interval = settings.BOT_CLEANUP_INTERVAL_MS / 1000.0
        self._stale_after = timedelta(milliseconds=settings.BOT_STALE_AFTER_MS)

    def is_stale(self, instance: BotInstance, now: datetime | None = None) -> bool:
        if instance.status not in TERMINAL_STATUSES:
            return False
        return (now or self._clock()) - instance.last_seen() > self._stale_after

    async def sweep(self) -> list[str]:
        """Purge every stale terminal bot. Returns the purged ids."""
        now = self._clock()
        purged: list[str] = []
        for instance in self._registry.all():
            async with instance.lock:
                if not self.is_stale(instance, now):
                    continue
                logger.info(
                    "janitor.purging_stale_bot",
                    bot_id=instance.id,
                    status=instance.status.value,
                    last_seen=instance.last_seen().isoformat(),
                )
                self.release(instance)
            purged.append(instance.id)
        return purged

    def release(self, instance: BotInstance) -> None:
        """Cancel the bot's timers, kill its process, and stop tracking it."""
        self._pipeline.stop(instance)
        self._scheduler.cancel(retry_task_name(instance.id))
        self._supervisor.terminate(instance)
        self._registry.remove(instance.id)
        monitoring.bots_active.set(len(self._registry.active()))
        logger.info("janitor.bot_released", bot_id=instance.id)
