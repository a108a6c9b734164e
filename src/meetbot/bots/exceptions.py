"""Error taxonomy for the bot orchestrator.

join_meeting raises ConfigurationError, RateLimitError, CapacityError,
ProcessSpawnError and ConnectionTimeoutError to its caller. The rest are
raised and handled internally: they end up in logs, stats, health rows
and bot.error events, never at a caller.
"""

from __future__ import annotations


class BotOrchestratorError(Exception):
    """Base class for every orchestrator error."""


class ConfigurationError(BotOrchestratorError):
    """Meeting SDK credentials are missing; no state was created."""


class RateLimitError(BotOrchestratorError):
    """A join for the same meeting number happened inside the rate-limit window."""

    def __init__(self, meeting_number: str, retry_after: float) -> None:
        self.meeting_number = meeting_number
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for meeting {meeting_number}; "
            f"retry in {retry_after:.1f}s"
        )


class CapacityError(BotOrchestratorError):
    """The concurrent bot cap is reached."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Maximum concurrent bots ({limit}) reached")


class ProcessSpawnError(BotOrchestratorError):
    """The external bot process could not be started."""


class ConnectionTimeoutError(BotOrchestratorError):
    """The bot process did not report a connected status in time."""

    def __init__(self, bot_id: str, timeout: float) -> None:
        self.bot_id = bot_id
        self.timeout = timeout
        super().__init__(f"Bot {bot_id} did not connect within {timeout:.0f}s")


class TranscriptionError(BotOrchestratorError):
    """The speech-to-text call failed or returned an unusable response."""


class UnexpectedProcessExit(BotOrchestratorError):
    """The bot process exited without being asked to leave."""

    def __init__(self, bot_id: str, exit_code: int | None) -> None:
        self.bot_id = bot_id
        self.exit_code = exit_code
        super().__init__(f"Bot {bot_id} process exited unexpectedly (code {exit_code})")


class MaxRetriesExceeded(BotOrchestratorError):
    """Automatic reconnection gave up; the bot stays in error."""

    def __init__(self, bot_id: str, retries: int) -> None:
        self.bot_id = bot_id
        self.retries = retries
        super().__init__(f"Bot {bot_id} exceeded max retries ({retries})")
