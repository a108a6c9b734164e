"""Process supervision for meeting bot instances.

ProcessSupervisor spawns the external bot process for an instance,
routes its IPC messages and exit to the orchestrator, waits for it to
connect, and runs the stop protocol:

- start: spawn with a fresh short-lived credential, status -> joining,
  then wait up to BOT_JOIN_TIMEOUT_MS for a connected/recording status.
  An error message or a process exit while waiting fails the start.
- stop: final audio flush, send ``leave``, wait up to BOT_STOP_GRACE_MS
  for the process to exit, then kill it.
- exits that were not requested are classified (code 0 -> disconnected,
  otherwise error) and handed to the unexpected-exit callback.

Each instance owns at most one current process. Messages and exits from
a process that has been replaced (reconnect) or terminated are ignored.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from src.meetbot.bots.exceptions import (
    ConnectionTimeoutError,
    ProcessSpawnError,
    UnexpectedProcessExit,
)
from src.meetbot.bots.messages import (
    BotMessage,
    ErrorMessage,
    StatusMessage,
    command,
    parse_message,
)
from src.meetbot.bots.process import BotProcess, ProcessFactory, subprocess_factory
from src.meetbot.bots.registry import BotInstance
from src.meetbot.bots.schemas import CONNECTED_STATUSES, BotStatus
from src.meetbot.core import monitoring

if TYPE_CHECKING:
    from src.meetbot.audio.pipeline import AudioPipeline

logger = structlog.get_logger(__name__)

MessageCallback = Callable[[BotInstance, BotMessage], Awaitable[None]]
ExitCallback = Callable[[BotInstance, int | None], Awaitable[None]]


class ProcessSupervisor:
    """Spawns, monitors and terminates bot processes.

    Args:
        settings: Orchestrator settings (runner command, timeouts, audio).
        pipeline: AudioPipeline used for the final flush before leave.
        on_message: Awaited for every valid message from a current process.
        on_unexpected_exit: Awaited after an exit that nobody requested,
            once the instance status has been updated.
        process_factory: Builds BotProcess handles; defaults to real
            OS subprocesses.
    """

    def __init__(
        self,
        settings: Any,
        pipeline: AudioPipeline,
        on_message: MessageCallback,
        on_unexpected_exit: ExitCallback,
        process_factory: ProcessFactory | None = None,
    ) -> None:
        self._settings = settings
        self._pipeline = pipeline
        self._on_message = on_message
        self._on_unexpected_exit = on_unexpected_exit
        self._factory = process_factory or subprocess_factory
        self._join_timeout = settings.BOT_JOIN_TIMEOUT_MS / 1000.0
        self._stop_grace = settings.BOT_STOP_GRACE_MS / 1000.0
        # bot_id -> future resolved when a pending start connects or fails
        self._pending_starts: dict[str, asyncio.Future] = {}
        # processes whose exit was requested (stop/terminate/timeout)
        self._retired: weakref.WeakSet = weakref.WeakSet()

    # ── Launch ──────────────────────────────────────────────────────────

    def build_env(self, instance: BotInstance, credential: str) -> dict[str, str]:
        """Startup parameters handed to the bot process via its environment."""
        s = self._settings
        return {
            "ZOOM_SDK_KEY": s.ZOOM_SDK_KEY,
            "ZOOM_JWT": credential,
            "MEETING_NUMBER": instance.meeting_number,
            "MEETING_PASSWORD": instance.meeting_password or "",
            "BOT_NAME": instance.bot_name,
            "BOT_ID": instance.id,
            "AUDIO_SAMPLE_RATE": str(s.AUDIO_SAMPLE_RATE),
            "MAX_JOIN_RETRIES": str(s.BOT_MAX_RETRIES),
            "JOIN_RETRY_DELAY_MS": str(s.BOT_RETRY_DELAY_MS),
            "HEALTH_CHECK_INTERVAL_MS": str(s.BOT_HEALTH_CHECK_MS),
            "RECONNECT_ON_ERROR": str(s.BOT_AUTO_RECONNECT).lower(),
            "LOG_LEVEL": "info" if s.ENVIRONMENT.value == "production" else "debug",
        }

    async def start(
        self,
        instance: BotInstance,
        credential: str,
        on_spawned: Callable[[BotInstance], None] | None = None,
    ) -> None:
        """Spawn the bot process and wait until it reports connected.

        ``on_spawned`` is called once the process is running, before the
        wait for its connected status begins.

        Raises:
            ProcessSpawnError: The process could not be started.
            ConnectionTimeoutError: No connected status within the join timeout.
            UnexpectedProcessExit: The process exited before connecting.
            RuntimeError: The process reported an error before connecting.
        """
        env = self.build_env(instance, credential)
        waiter = asyncio.get_running_loop().create_future()
        self._pending_starts[instance.id] = waiter
        try:
            process = self._factory(self._settings.bot_runner_argv(), env)
            instance.process = process
            self._bind(instance, process)
            await process.spawn()
        except (OSError, ValueError) as exc:
            del self._pending_starts[instance.id]
            waiter.cancel()
            instance.process = None
            instance.status = BotStatus.ERROR
            instance.error = f"Failed to spawn bot process: {exc}"
            instance.stats.errors += 1
            logger.error("supervisor.spawn_failed", bot_id=instance.id, error=str(exc))
            raise ProcessSpawnError(instance.error) from exc

        if not waiter.done():
            instance.status = BotStatus.JOINING
        logger.info(
            "supervisor.process_started",
            bot_id=instance.id,
            pid=process.pid,
            meeting_number=instance.meeting_number,
        )
        if on_spawned is not None:
            on_spawned(instance)

        try:
            await asyncio.wait_for(waiter, timeout=self._join_timeout)
        except asyncio.TimeoutError:
            instance.status = BotStatus.ERROR
            instance.error = "Bot connection timeout"
            instance.stats.errors += 1
            self._abandon(instance, process)
            logger.error(
                "supervisor.join_timeout",
                bot_id=instance.id,
                timeout_s=self._join_timeout,
            )
            raise ConnectionTimeoutError(instance.id, self._join_timeout) from None
        except BaseException:
            # failed or cancelled before connecting
            self._abandon(instance, process)
            raise
        finally:
            if self._pending_starts.get(instance.id) is waiter:
                del self._pending_starts[instance.id]
            if not waiter.done():
                waiter.cancel()

    def _bind(self, instance: BotInstance, process: BotProcess) -> None:
        async def _on_raw(raw: dict[str, Any]) -> None:
            await self._handle_raw(instance, process, raw)

        async def _on_exit(code: int | None) -> None:
            await self._handle_exit(instance, process, code)

        process.on("message", _on_raw)
        process.on("exit", _on_exit)

    # ── Inbound ─────────────────────────────────────────────────────────

    async def _handle_raw(self, instance: BotInstance, process: BotProcess, raw: dict[str, Any]) -> None:
        if instance.process is not process or process in self._retired:
            return
        try:
            message = parse_message(raw)
        except ValueError:
            logger.warning("supervisor.invalid_message", bot_id=instance.id, raw_type=raw.get("type"))
            return

        await self._on_message(instance, message)
        self._resolve_start(instance, message)

    def _resolve_start(self, instance: BotInstance, message: BotMessage) -> None:
        waiter = self._pending_starts.get(instance.id)
        if waiter is None or waiter.done():
            return
        if instance.status in CONNECTED_STATUSES:
            waiter.set_result(instance.status)
        elif isinstance(message, ErrorMessage) or (
            isinstance(message, StatusMessage) and message.status == BotStatus.ERROR
        ):
            waiter.set_exception(RuntimeError(instance.error or "Bot failed to connect"))

    async def _handle_exit(self, instance: BotInstance, process: BotProcess, code: int | None) -> None:
        requested = process in self._retired
        self._retired.discard(process)
        logger.info("supervisor.process_exited", bot_id=instance.id, code=code, requested=requested)
        if requested or instance.process is not process:
            monitoring.bot_process_exits_total.labels(kind="requested").inc()
            return

        instance.process = None
        waiter = self._pending_starts.get(instance.id)
        if waiter is not None and not waiter.done():
            # the pending start reports this failure to its caller
            instance.status = BotStatus.ERROR
            instance.error = f"Bot process exited with code {code} before connecting"
            instance.stats.errors += 1
            monitoring.bot_process_exits_total.labels(kind="before_connect").inc()
            waiter.set_exception(UnexpectedProcessExit(instance.id, code))
            return

        async with instance.lock:
            if instance.status in (BotStatus.LEAVING, BotStatus.DISCONNECTED):
                monitoring.bot_process_exits_total.labels(kind="graceful").inc()
                return
            if code == 0:
                instance.status = BotStatus.DISCONNECTED
                monitoring.bot_process_exits_total.labels(kind="clean").inc()
            else:
                instance.status = BotStatus.ERROR
                instance.error = str(UnexpectedProcessExit(instance.id, code))
                instance.stats.errors += 1
                monitoring.bot_process_exits_total.labels(kind="crash").inc()

        await self._on_unexpected_exit(instance, code)

    # ── Outbound ────────────────────────────────────────────────────────

    async def request_status(self, instance: BotInstance) -> bool:
        """Ask the process to report its status. Returns False if it is gone."""
        return await self._send(instance, command("status"))

    async def request_flush(self, instance: BotInstance) -> bool:
        """Ask the process to flush its own capture buffer."""
        return await self._send(instance, command("flush"))

    async def _send(self, instance: BotInstance, message: dict[str, str]) -> bool:
        process = instance.process
        if process is None or not process.running:
            return False
        try:
            await process.send(message)
        except (ConnectionError, OSError, RuntimeError):
            logger.warning("supervisor.send_failed", bot_id=instance.id, type=message["type"], exc_info=True)
            return False
        return True

    # ── Stop ────────────────────────────────────────────────────────────

    async def stop(self, instance: BotInstance) -> None:
        """Flush remaining audio, ask the process to leave, force-kill after the grace period."""
        waiter = self._pending_starts.get(instance.id)
        if waiter is not None and not waiter.done():
            waiter.set_exception(ConnectionError(f"Bot {instance.id} was stopped before connecting"))

        await self._pipeline.flush(instance)

        process = instance.process
        if process is None or not process.running:
            return

        self._retired.add(process)
        try:
            await process.send(command("leave"))
        except (ConnectionError, OSError, RuntimeError):
            logger.warning("supervisor.leave_failed", bot_id=instance.id, exc_info=True)
            process.kill()
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self._stop_grace)
            logger.info("supervisor.process_left", bot_id=instance.id)
        except asyncio.TimeoutError:
            logger.warning("supervisor.force_kill", bot_id=instance.id, grace_s=self._stop_grace)
            process.kill()

    def terminate(self, instance: BotInstance) -> None:
        """Kill the current process immediately, without flush or leave."""
        process = instance.process
        instance.process = None
        if process is not None:
            self._retire(process)

    def _abandon(self, instance: BotInstance, process: BotProcess) -> None:
        if instance.process is process:
            instance.process = None
        self._retire(process)

    def _retire(self, process: BotProcess) -> None:
        self._retired.add(process)
        if process.running:
            process.kill()
