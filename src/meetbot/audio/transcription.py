"""Async HTTP client for a Whisper-compatible transcription deployment.

Provides WhisperClient, which uploads a framed WAV buffer as multipart
form data and parses the verbose JSON response into a
TranscriptionResult. Transport failures are retried with tenacity (3
attempts, exponential backoff 1-10s); an exhausted retry surfaces as
TranscriptionError. The caller bounds the whole call with its own
timeout.
"""

from __future__ import annotations

import math
from typing import Any

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.meetbot.bots.exceptions import TranscriptionError

logger = structlog.get_logger(__name__)

_whisper_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)),
)


class TranscriptionResult(BaseModel):
    """Parsed transcription response."""

    text: str = ""
    confidence: float | None = None
    language: str | None = None
    duration: float | None = None


def confidence_from_response(data: dict[str, Any]) -> float | None:
    """exp of the mean ``avg_logprob`` across every segment in the response.

    One flush window can come back as several Whisper segments; the
    confidence covers the whole window, so all of them are averaged
    rather than taking the first segment alone. Falls back to a top-level
    ``avg_logprob`` when the response has no segment list. Returns None
    when the backend reports no log-probability.
    """
    logprobs = [
        segment["avg_logprob"]
        for segment in data.get("segments") or []
        if isinstance(segment, dict) and segment.get("avg_logprob") is not None
    ]
    if not logprobs and data.get("avg_logprob") is not None:
        logprobs = [data["avg_logprob"]]
    if not logprobs:
        return None
    return math.exp(sum(logprobs) / len(logprobs))


class WhisperClient:
    """Async client for the audio transcription endpoint.

    Args:
        endpoint: Base URL of the deployment host.
        api_key: API key sent in the ``api-key`` header.
        deployment: Deployment name in the request path.
        api_version: ``api-version`` query parameter.
        timeout: Per-request HTTP timeout in seconds.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        deployment: str = "whisper",
        api_version: str = "2024-02-01",
        timeout: float = 30.0,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._api_key = api_key
        self._deployment = deployment
        self._api_version = api_version
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Any) -> WhisperClient:
        return cls(
            endpoint=settings.WHISPER_ENDPOINT,
            api_key=settings.WHISPER_API_KEY,
            deployment=settings.WHISPER_DEPLOYMENT,
            api_version=settings.WHISPER_API_VERSION,
            timeout=settings.TRANSCRIPTION_TIMEOUT_MS / 1000.0,
        )

    @property
    def configured(self) -> bool:
        return bool(self._endpoint and self._api_key)

    @property
    def url(self) -> str:
        return (
            f"{self._endpoint}/openai/deployments/{self._deployment}"
            f"/audio/transcriptions?api-version={self._api_version}"
        )

    async def transcribe(self, wav_bytes: bytes) -> TranscriptionResult:
        """Transcribe one framed WAV buffer.

        Raises:
            TranscriptionError: When the call fails after retries or the
                response is not the expected JSON.
        """
        try:
            data = await self._post_audio(wav_bytes)
        except RetryError as exc:
            raise TranscriptionError(f"transcription failed after retries: {exc.last_attempt.exception()}") from exc
        except httpx.HTTPError as exc:
            raise TranscriptionError(f"transcription request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise TranscriptionError("transcription response is not a JSON object")

        result = TranscriptionResult(
            text=data.get("text") or "",
            confidence=confidence_from_response(data),
            language=data.get("language"),
            duration=data.get("duration"),
        )
        logger.debug(
            "whisper.transcribed",
            chars=len(result.text),
            confidence=result.confidence,
        )
        return result

    @_whisper_retry
    async def _post_audio(self, wav_bytes: bytes) -> Any:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                self.url,
                headers={"api-key": self._api_key},
                files={"file": ("audio.wav", wav_bytes, "audio/wav")},
                data={"response_format": "verbose_json"},
            )
            response.raise_for_status()
            try:
                return response.json()
            except ValueError as exc:
                raise TranscriptionError("transcription response is not JSON") from exc
