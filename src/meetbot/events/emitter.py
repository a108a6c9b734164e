"""In-process, fire-and-forget publisher for bot events.

Subscribers register per event type (or ``"*"`` for everything). emit()
never raises and never waits: synchronous handlers run inline inside a
try/except, coroutine handlers are scheduled as tasks whose failures are
only logged. Delivery is at-most-once and best-effort, so a broken
subscriber can not block or roll back orchestrator state.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog

from src.meetbot.events.schemas import BotEvent, EventType

logger = structlog.get_logger(__name__)

ALL_EVENTS = "*"

EventHandler = Callable[[BotEvent], Any]


class EventEmitter:
    """Publish BotEvents to registered subscribers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event_type: EventType | str, handler: EventHandler) -> None:
        """Subscribe ``handler`` to one event type, or ``"*"`` for all."""
        self._handlers[self._key(event_type)].append(handler)

    def off(self, event_type: EventType | str, handler: EventHandler) -> None:
        handlers = self._handlers.get(self._key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(
        self,
        event_type: EventType,
        bot_id: str,
        meeting_session_id: str,
        **data: Any,
    ) -> BotEvent:
        """Build and deliver an event. Returns the event that was published."""
        event = BotEvent(
            event_type=event_type,
            bot_id=bot_id,
            meeting_session_id=meeting_session_id,
            data=data,
        )
        handlers = [*self._handlers.get(event_type.value, []), *self._handlers.get(ALL_EVENTS, [])]
        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                logger.warning(
                    "events.subscriber_failed",
                    event_type=event_type.value,
                    bot_id=bot_id,
                    exc_info=True,
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)

        logger.debug("events.emitted", event_type=event_type.value, bot_id=bot_id)
        return event

    async def drain(self) -> None:
        """Wait for coroutine subscribers that are still running."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, event: BotEvent, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: the coroutine can not be delivered
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning(
                "events.subscriber_dropped",
                event_type=event.event_type.value,
                bot_id=event.bot_id,
            )
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(lambda t, e=event: self._on_done(t, e))

    def _on_done(self, task: asyncio.Task, event: BotEvent) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.warning(
                "events.subscriber_failed",
                event_type=event.event_type.value,
                bot_id=event.bot_id,
                exc_info=task.exception(),
            )

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        return event_type.value if isinstance(event_type, EventType) else event_type
