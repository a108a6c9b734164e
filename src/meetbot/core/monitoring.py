"""Prometheus metrics for bot lifecycle and the transcription pipeline.

Provides module-level collectors updated by the orchestrator components
and get_metrics_text() for exposing them to a scraper.
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ── Bot Lifecycle Metrics ────────────────────────────────────────────────────

bot_joins_total = Counter(
    "meetbot_joins_total",
    "Join attempts by outcome",
    ["outcome"],
)

bots_active = Gauge(
    "meetbot_bots_active",
    "Bots currently in an active status",
)

bot_reconnects_total = Counter(
    "meetbot_reconnects_total",
    "Reconnection attempts scheduled",
)

bot_process_exits_total = Counter(
    "meetbot_process_exits_total",
    "Bot process exits by kind",
    ["kind"],
)

# ── Audio / Transcription Metrics ────────────────────────────────────────────

audio_chunks_total = Counter(
    "meetbot_audio_chunks_total",
    "Audio chunks received from bot processes",
)

transcription_requests_total = Counter(
    "meetbot_transcription_requests_total",
    "Transcription calls by status",
    ["status"],
)

transcription_duration_seconds = Histogram(
    "meetbot_transcription_duration_seconds",
    "Transcription call duration in seconds",
    buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0),
)


def get_metrics_text() -> bytes:
    """Render all registered metrics in the Prometheus text format."""
    return generate_latest(REGISTRY)
