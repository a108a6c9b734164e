"""External bot process capability.

The orchestrator only talks to bot processes through the BotProcess
protocol: spawn, send a message, subscribe to ``message``/``exit``
events, kill, wait. SubprocessBotProcess implements it over an asyncio
subprocess speaking newline-delimited JSON on stdin/stdout; tests use a
deterministic in-memory double instead.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Awaitable, Callable
from typing import Any, Literal, Protocol

import structlog

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
ExitHandler = Callable[[int | None], Awaitable[None]]
ProcessEvent = Literal["message", "exit"]

# One stdout line carries a whole audio chunk as base64: 5 s of 16 kHz mono
# pcm_s16le is about 213 KB, well past asyncio's 64 KiB default.
STDOUT_LINE_LIMIT = 8 * 1024 * 1024


class BotProcess(Protocol):
    """Handle to one external bot process, owned by exactly one BotInstance."""

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    @property
    def running(self) -> bool: ...

    async def spawn(self) -> None: ...

    async def send(self, message: dict[str, Any]) -> None: ...

    def on(self, event: ProcessEvent, handler: Callable[..., Awaitable[None]]) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int | None: ...


ProcessFactory = Callable[[list[str], dict[str, str]], BotProcess]


class SubprocessBotProcess:
    """BotProcess backed by ``asyncio.create_subprocess_exec``.

    Each stdout line is decoded as JSON and passed to the ``message``
    handlers in arrival order; lines that are not JSON objects are logged.
    stderr is logged line by line. After stdout closes the process is
    reaped and ``exit`` handlers receive the return code.

    Args:
        argv: Command line of the bot runner.
        env: Extra environment variables merged over the parent's.
        bot_id: Used only for log context.
        line_limit: Longest stdout line accepted, in bytes. Longer lines
            are logged and skipped.
    """

    def __init__(
        self,
        argv: list[str],
        env: dict[str, str],
        bot_id: str = "",
        line_limit: int = STDOUT_LINE_LIMIT,
    ) -> None:
        self._argv = argv
        self._env = env
        self._bot_id = bot_id
        self._line_limit = line_limit
        self._proc: asyncio.subprocess.Process | None = None
        self._handlers: dict[str, list[Callable[..., Awaitable[None]]]] = {
            "message": [],
            "exit": [],
        }
        self._io_tasks: list[asyncio.Task] = []
        self._send_lock = asyncio.Lock()

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def on(self, event: ProcessEvent, handler: Callable[..., Awaitable[None]]) -> None:
        if event not in self._handlers:
            raise ValueError(f"Unknown process event: {event}")
        self._handlers[event].append(handler)

    async def spawn(self) -> None:
        """Start the process (OSError propagates when the binary is missing)."""
        if self._proc is not None:
            raise RuntimeError("process already spawned")
        self._proc = await asyncio.create_subprocess_exec(
            *self._argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **self._env},
            limit=self._line_limit,
        )
        logger.info("process.spawned", bot_id=self._bot_id, pid=self._proc.pid)
        self._io_tasks = [
            asyncio.create_task(self._read_stdout(), name=f"stdout:{self._bot_id}"),
            asyncio.create_task(self._read_stderr(), name=f"stderr:{self._bot_id}"),
        ]

    async def send(self, message: dict[str, Any]) -> None:
        if not self.running or self._proc.stdin is None:
            raise ConnectionError("bot process is not running")
        line = json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"
        async with self._send_lock:
            self._proc.stdin.write(line)
            await self._proc.stdin.drain()

    def kill(self) -> None:
        if self.running:
            logger.warning("process.killed", bot_id=self._bot_id, pid=self._proc.pid)
            self._proc.kill()

    async def wait(self) -> int | None:
        if self._proc is None:
            return None
        return await self._proc.wait()

    async def _read_stdout(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        try:
            while True:
                try:
                    line = await self._proc.stdout.readline()
                except ValueError:
                    # readline() drops the oversized data; reading resumes after it
                    logger.warning(
                        "process.stdout_line_too_long",
                        bot_id=self._bot_id,
                        limit=self._line_limit,
                    )
                    continue
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("process.stdout", bot_id=self._bot_id, line=text[:200])
                    continue
                if not isinstance(message, dict):
                    logger.debug("process.stdout", bot_id=self._bot_id, line=text[:200])
                    continue
                await self._dispatch("message", message)
        except Exception:
            logger.error("process.stdout_reader_failed", bot_id=self._bot_id, exc_info=True)

        code = await self._proc.wait()
        await self._dispatch("exit", code)

    async def _read_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            try:
                line = await self._proc.stderr.readline()
            except ValueError:
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.warning("process.stderr", bot_id=self._bot_id, line=text)

    async def _dispatch(self, event: str, arg: Any) -> None:
        for handler in list(self._handlers[event]):
            try:
                await handler(arg)
            except Exception:
                logger.warning(
                    "process.handler_error",
                    bot_id=self._bot_id,
                    event=event,
                    exc_info=True,
                )


def subprocess_factory(argv: list[str], env: dict[str, str]) -> BotProcess:
    """Default ProcessFactory: a real OS process tagged with its BOT_ID."""
    return SubprocessBotProcess(argv, env, bot_id=env.get("BOT_ID", ""))
