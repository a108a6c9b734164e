"""Named, cancellable background tasks on the running asyncio loop.

TaskScheduler owns every timer the orchestrator starts: the health
monitor and cleanup janitor loops, one audio flush loop per bot, and
one pending reconnection per bot. Tasks are addressed by name so a stop
or purge can cancel exactly the timers that belong to one bot, and
shutdown() can cancel all of them before bots are stopped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

TaskFn = Callable[[], Awaitable[object]]


class TaskScheduler:
    """Registry of named periodic and delayed asyncio tasks."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def every(self, name: str, interval: float, fn: TaskFn) -> asyncio.Task:
        """Run ``fn`` every ``interval`` seconds until cancelled.

        The first run happens one interval after scheduling. Exceptions
        raised by ``fn`` are logged and the loop keeps going.
        """

        async def _loop() -> None:
            while True:
                try:
                    await asyncio.sleep(interval)
                    await fn()
                except asyncio.CancelledError:
                    logger.debug("scheduler.task_cancelled", task=name)
                    raise
                except Exception:
                    logger.warning("scheduler.task_loop_error", task=name, exc_info=True)

        return self._register(name, _loop())

    def after(self, name: str, delay: float, fn: TaskFn) -> asyncio.Task:
        """Run ``fn`` once after ``delay`` seconds unless cancelled first."""

        async def _delayed() -> None:
            await asyncio.sleep(delay)
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("scheduler.delayed_task_error", task=name, exc_info=True)

        return self._register(name, _delayed())

    def cancel(self, name: str) -> bool:
        """Cancel the task registered under ``name``. Returns True if one was live."""
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def cancel_prefix(self, prefix: str) -> int:
        """Cancel every task whose name starts with ``prefix``."""
        return sum(self.cancel(name) for name in list(self._tasks) if name.startswith(prefix))

    def is_pending(self, name: str) -> bool:
        """True if another, unfinished task is registered under ``name``.

        The calling task itself never counts as pending, so a delayed
        task may re-schedule its own name from inside ``fn``.
        """
        task = self._tasks.get(name)
        return task is not None and not task.done() and task is not asyncio.current_task()

    def names(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    async def shutdown(self) -> None:
        """Cancel all tasks and wait for them to finish unwinding."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        self._tasks.clear()
        current = asyncio.current_task()
        tasks = [task for task in tasks if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler.shutdown", cancelled=len(tasks))

    def _register(self, name: str, coro: Awaitable[None]) -> asyncio.Task:
        existing = self._tasks.get(name)
        if existing is not None and not existing.done() and existing is not asyncio.current_task():
            existing.cancel()
        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(lambda t: self._forget(name, t))
        return task

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
