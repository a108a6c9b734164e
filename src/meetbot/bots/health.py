"""Periodic liveness and staleness checks for tracked bots.

A bot is unhealthy when any of these hold:
1. Its status is error
2. Its last health message is older than 2x BOT_HEALTH_CHECK_MS
3. It has been connected for longer than BOT_TIMEOUT_MS

Unhealthy bots get a bot.unhealthy event on every scan. Unless they are
leaving, or automatic reconnection is off, they are handed to the
ReconnectionManager, which ignores bots that already have a retry
pending or have run out of retries.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.meetbot.bots.reconnect import ReconnectionManager
from src.meetbot.bots.registry import BotInstance, BotRegistry, utcnow
from src.meetbot.bots.schemas import BotStatus
from src.meetbot.events.emitter import EventEmitter
from src.meetbot.events.schemas import EventType

logger = structlog.get_logger(__name__)

HEALTH_TASK_NAME = "health-monitor"


class HealthMonitor:
    """Scans the registry for stale or failed bots.

    Args:
        registry: BotRegistry to scan.
        reconnector: ReconnectionManager receiving unhealthy bots.
        emitter: EventEmitter for bot.unhealthy.
        settings: Orchestrator settings.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        registry: BotRegistry,
        reconnector: ReconnectionManager,
        emitter: EventEmitter,
        settings: Any,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._reconnector = reconnector
        self._emitter = emitter
        self._clock = clock
        self.interval = settings.BOT_HEALTH_CHECK_MS / 1000.0
        self._stale_after = timedelta(milliseconds=settings.BOT_HEALTH_CHECK_MS * 2)
        self._session_timeout = timedelta(milliseconds=settings.BOT_TIMEOUT_MS)
        self._auto_reconnect = settings.BOT_AUTO_RECONNECT

    def is_healthy(self, instance: BotInstance, now: datetime | None = None) -> bool:
        return self.unhealthy_reason(instance, now) is None

    def unhealthy_reason(self, instance: BotInstance, now: datetime | None = None) -> str | None:
        """Why a bot is unhealthy, or None when it is healthy."""
        now = now or self._clock()
        if instance.status == BotStatus.ERROR:
            return "status_error"
        if instance.last_health_check is not None:
            if now - instance.last_health_check > self._stale_after:
                return "health_check_stale"
        if instance.start_time is not None:
            if now - instance.start_time > self._session_timeout:
                return "session_timeout"
        return None

    async def check(self) -> list[str]:
        """Run one scan. Returns the ids of unhealthy bots."""
        now = self._clock()
        unhealthy: list[str] = []

        for instance in self._registry.all():
            async with instance.lock:
                reason = self.unhealthy_reason(instance, now)
                status = instance.status
                last_check = instance.last_health_check
            if reason is None:
                continue

            unhealthy.append(instance.id)
            logger.warning(
                "health.bot_unhealthy",
                bot_id=instance.id,
                status=status.value,
                reason=reason,
            )
            self._emitter.emit(
                EventType.BOT_UNHEALTHY,
                instance.id,
                instance.meeting_session_id,
                status=status.value,
                reason=reason,
                last_health_check=last_check,
            )

            if self._auto_reconnect and status != BotStatus.LEAVING:
                await self._reconnector.handle_failure(instance, reason=reason)

        if unhealthy:
            logger.info("health.scan_complete", tracked=len(self._registry), unhealthy=len(unhealthy))
        return unhealthy
