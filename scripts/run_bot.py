#!/usr/bin/env python3
"""Join a meeting with one bot and stream its transcript to stdout.

Usage:
    python scripts/run_bot.py --meeting-number 123456789 --session demo-1
    python scripts/run_bot.py --meeting-number 123456789 --password abc --name "Note Taker"

Stops the bot on Ctrl-C and prints the full transcript.

Reads ZOOM_SDK_KEY, ZOOM_SDK_SECRET, WHISPER_* and BOT_* settings from
the environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import uuid

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

from src.meetbot.bots.exceptions import BotOrchestratorError  # noqa: E402
from src.meetbot.bots.orchestrator import BotOrchestrator  # noqa: E402
from src.meetbot.bots.schemas import JoinRequest  # noqa: E402
from src.meetbot.config import get_settings  # noqa: E402
from src.meetbot.core.logging import configure_structlog  # noqa: E402
from src.meetbot.events.schemas import BotEvent, EventType  # noqa: E402

logger = structlog.get_logger(__name__)


def print_segment(event: BotEvent) -> None:
    segment = event.data["segment"]
    speaker = segment.speaker_name or "unknown"
    print(f"[{speaker}] {segment.text}", flush=True)


async def run(request: JoinRequest) -> int:
    settings = get_settings()
    configure_structlog(settings)

    orchestrator = BotOrchestrator(settings)
    if not await orchestrator.start():
        print("Meeting SDK credentials are not configured (ZOOM_SDK_KEY / ZOOM_SDK_SECRET)", file=sys.stderr)
        return 1
    orchestrator.events.on(EventType.TRANSCRIPTION_SEGMENT, print_segment)

    try:
        bot = await orchestrator.join_meeting(request)
    except BotOrchestratorError as exc:
        logger.error("run_bot.join_failed", error=str(exc))
        await orchestrator.shutdown()
        return 1

    print(f"Bot {bot.id} joined meeting {bot.meeting_number} -- press Ctrl-C to leave", flush=True)
    try:
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        transcript = orchestrator.get_full_transcript_text(bot.id)
        await orchestrator.shutdown()
        print("\n--- Transcript ---")
        print(transcript or "(empty)")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a meeting bot and print its transcript")
    parser.add_argument("--meeting-number", required=True, help="Meeting number to join")
    parser.add_argument("--password", default=None, help="Meeting password")
    parser.add_argument("--session", default=None, help="Meeting session ID (random if omitted)")
    parser.add_argument("--name", default=None, help="Bot display name")
    parser.add_argument("--priority", choices=["high", "normal", "low"], default="normal")
    args = parser.parse_args()

    request = JoinRequest(
        meeting_session_id=args.session or f"cli-{uuid.uuid4().hex[:8]}",
        meeting_number=args.meeting_number,
        meeting_password=args.password,
        bot_name=args.name,
        priority=args.priority,
    )
    try:
        sys.exit(asyncio.run(run(request)))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
