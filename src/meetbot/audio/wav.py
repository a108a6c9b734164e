"""RIFF/WAVE framing for raw PCM audio.

The bot process streams headerless signed 16-bit little-endian PCM. The
transcription backend needs a self-describing container, so each flush
wraps its PCM in a canonical 44-byte WAV header.
"""

from __future__ import annotations

import io
import struct
import wave
from dataclasses import dataclass

SAMPLE_WIDTH = 2  # bytes per sample (pcm_s16le)

_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")
HEADER_SIZE = _HEADER.size  # 44


@dataclass(frozen=True)
class WavHeader:
    """Fields of a canonical PCM WAV header."""

    sample_rate: int
    channels: int
    bits_per_sample: int
    byte_rate: int
    block_align: int
    data_size: int


def pcm_duration(
    num_bytes: int,
    sample_rate: int,
    channels: int = 1,
    sample_width: int = SAMPLE_WIDTH,
) -> float:
    """Duration in seconds of ``num_bytes`` of interleaved PCM."""
    return num_bytes / float(sample_rate * channels * sample_width)


def frame_pcm(
    pcm: bytes,
    sample_rate: int,
    channels: int = 1,
    sample_width: int = SAMPLE_WIDTH,
) -> bytes:
    """Wrap raw PCM in a WAV container.

    A trailing partial frame (fewer bytes than channels * sample_width)
    is dropped.
    """
    frame_size = channels * sample_width
    usable = len(pcm) - (len(pcm) % frame_size)
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(sample_width)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm[:usable])
    return buf.getvalue()


def parse_wav_header(data: bytes) -> WavHeader:
    """Read the canonical header back from a framed buffer.

    Raises:
        ValueError: If the buffer is not a canonical PCM WAV file.
    """
    if len(data) < HEADER_SIZE:
        raise ValueError(f"WAV buffer too short: {len(data)} bytes")
    (
        riff,
        _riff_size,
        wave_tag,
        fmt_tag,
        fmt_size,
        audio_format,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        data_tag,
        data_size,
    ) = _HEADER.unpack_from(data, 0)
    if riff != b"RIFF" or wave_tag != b"WAVE":
        raise ValueError("not a RIFF/WAVE buffer")
    if fmt_tag != b"fmt " or fmt_size != 16 or audio_format != 1:
        raise ValueError("unsupported WAV format chunk")
    if data_tag != b"data":
        raise ValueError("missing data chunk")
    return WavHeader(
        sample_rate=sample_rate,
        channels=channels,
        bits_per_sample=bits_per_sample,
        byte_rate=byte_rate,
        block_align=block_align,
        data_size=data_size,
    )
