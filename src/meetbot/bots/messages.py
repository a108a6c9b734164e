"""Typed IPC messages exchanged with the external bot process.

The process writes one JSON object per line to stdout. Objects are
either flat (``{"type": "audio", "data": "..."}``) or wrapped in an
envelope (``{"type": "audio", "payload": {...}}``); parse_message
accepts both and returns one member of the BotMessage union. Wire field
names are camelCase.

Commands sent to the process use the same framing: ``leave``,
``status`` (ask for a status report) and ``flush`` (flush the capture
buffer inside the process).
"""

from __future__ import annotations

import base64
import binascii
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from src.meetbot.bots.schemas import BotStatus


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class StatusMessage(_WireModel):
    type: Literal["status"] = "status"
    status: BotStatus
    stats: dict[str, Any] | None = None


class AudioMessage(_WireModel):
    """PCM audio captured by the process; ``duration`` is in milliseconds."""

    type: Literal["audio"] = "audio"
    data: str
    timestamp: float | None = None
    duration: float = 0.0
    sample_rate: int | None = None
    channels: int | None = None

    def pcm(self) -> bytes:
        """Decode the base64 payload (raises ValueError on bad input)."""
        try:
            return base64.b64decode(self.data, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"audio payload is not valid base64: {exc}") from exc


class ParticipantInfo(_WireModel):
    id: str | int
    name: str | None = None
    email: str | None = None
    is_host: bool | None = None


class ParticipantMessage(_WireModel):
    type: Literal["participant"] = "participant"
    action: Literal["joined", "left"]
    participant: ParticipantInfo


class SpeakerMessage(_WireModel):
    type: Literal["speaker"] = "speaker"
    speaker_id: str | int | None = None
    speaker_name: str | None = None


class HealthMessage(_WireModel):
    type: Literal["health"] = "health"
    stats: dict[str, Any] | None = None
    uptime: float | None = None
    participant_count: int | None = None


class ErrorMessage(_WireModel):
    type: Literal["error"] = "error"
    error: str


BotMessage = Annotated[
    Union[
        StatusMessage,
        AudioMessage,
        ParticipantMessage,
        SpeakerMessage,
        HealthMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[BotMessage] = TypeAdapter(BotMessage)


def parse_message(raw: dict[str, Any]) -> BotMessage:
    """Validate a decoded JSON object into a BotMessage.

    Raises:
        ValueError: If the object is not a known, well-formed message.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"message must be an object, got {type(raw).__name__}")
    payload = raw.get("payload")
    if isinstance(payload, dict):
        raw = {**payload, "type": raw.get("type")}
    try:
        return _adapter.validate_python(raw)
    except ValidationError as exc:
        raise ValueError(f"invalid bot message: {exc}") from exc


def command(name: Literal["leave", "status", "flush"]) -> dict[str, str]:
    """Build a command envelope for the bot process."""
    return {"type": name}
