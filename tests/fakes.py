"""Deterministic stand-ins for the external bot process.

FakeBotProcess implements the BotProcess capability without an OS
process: tests push IPC messages and exits into it and inspect what the
supervisor sent back. FakeProcessFactory records every process it
builds so reconnect tests can address the newest one.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any


class FakeBotProcess:
    """In-memory BotProcess.

    Args:
        argv: Command line the supervisor asked for.
        env: Startup environment the supervisor built.
        auto_connect: Report ``connected`` right after spawn.
        exit_on_leave: Exit with code 0 when sent ``leave``; when False the
            process ignores leave and only dies on kill().
        spawn_error: Raised from spawn() instead of starting.
    """

    _next_pid = 4000

    def __init__(
        self,
        argv: list[str],
        env: dict[str, str],
        *,
        auto_connect: bool = False,
        exit_on_leave: bool = True,
        spawn_error: Exception | None = None,
    ) -> None:
        self.argv = argv
        self.env = env
        self.auto_connect = auto_connect
        self.exit_on_leave = exit_on_leave
        self.spawn_error = spawn_error
        self.sent: list[dict[str, Any]] = []
        self.spawned = False
        self.killed = False
        self._returncode: int | None = None
        self._exited = asyncio.Event()
        self._handlers: dict[str, list[Callable[..., Awaitable[None]]]] = {"message": [], "exit": []}
        self._tasks: set[asyncio.Task] = set()
        FakeBotProcess._next_pid += 1
        self._pid = FakeBotProcess._next_pid

    @property
    def pid(self) -> int | None:
        return self._pid if self.spawned else None

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def running(self) -> bool:
        return self.spawned and self._returncode is None

    def on(self, event: str, handler: Callable[..., Awaitable[None]]) -> None:
        self._handlers[event].append(handler)

    async def spawn(self) -> None:
        if self.spawn_error is not None:
            raise self.spawn_error
        self.spawned = True
        if self.auto_connect:
            self._later(self.emit_message({"type": "status", "status": "connected"}))

    async def send(self, message: dict[str, Any]) -> None:
        if not self.running:
            raise ConnectionError("bot process is not running")
        self.sent.append(message)
        if message.get("type") == "leave" and self.exit_on_leave:
            self._later(self.emit_exit(0))

    def kill(self) -> None:
        self.killed = True
        if self.running:
            self._later(self.emit_exit(-9))

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self._returncode

    # ── Test controls ───────────────────────────────────────────────────

    async def emit_message(self, raw: dict[str, Any]) -> None:
        """Deliver one decoded stdout line to the supervisor."""
        for handler in list(self._handlers["message"]):
            await handler(raw)

    async def emit_exit(self, code: int | None) -> None:
        """Terminate the process with ``code`` (no-op if already exited)."""
        if self._returncode is not None:
            return
        self._returncode = code
        self._exited.set()
        for handler in list(self._handlers["exit"]):
            await handler(code)

    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]

    def _later(self, coro: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class FakeProcessFactory:
    """ProcessFactory that builds FakeBotProcess handles and keeps them."""

    def __init__(self, **process_kwargs: Any) -> None:
        self.process_kwargs = process_kwargs
        self.processes: list[FakeBotProcess] = []

    def __call__(self, argv: list[str], env: dict[str, str]) -> FakeBotProcess:
        process = FakeBotProcess(argv, env, **self.process_kwargs)
        self.processes.append(process)
        return process

    @property
    def latest(self) -> FakeBotProcess:
        return self.processes[-1]


class FakeTranscriber:
    """Transcription client double returning canned results."""

    def __init__(self, results: list[Any] | None = None, configured: bool = True) -> None:
        self.results = list(results or [])
        self.configured = configured
        self.calls: list[bytes] = []

    async def transcribe(self, wav_bytes: bytes) -> Any:
        self.calls.append(wav_bytes)
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds, failing after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)
