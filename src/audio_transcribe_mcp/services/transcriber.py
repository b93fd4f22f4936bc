from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import httpx

from audio_transcribe_mcp.exceptions import RecognitionError
from audio_transcribe_mcp.services.model_profiles import RecognitionRequest
from audio_transcribe_mcp.utils.paths import audio_mime_type

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class Recognizer(Protocol):
    def transcribe(self, audio_path: Path, request: RecognitionRequest) -> Any:
        ...


class OpenAITranscriber:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def transcribe(self, audio_path: Path, request: RecognitionRequest) -> Any:
        if not audio_path.exists():
            raise RecognitionError(f"Audio file not found: {audio_path}")

        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/audio/transcriptions"
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                with audio_path.open("rb") as audio_stream:
                    response = client.post(
                        url,
                        headers=headers,
                        data=request.form_fields(),
                        files={"file": (audio_path.name, audio_stream, audio_mime_type(audio_path))},
                    )
        except httpx.TimeoutException as exc:
            raise RecognitionError(
                f"Transcription request for {audio_path.name} timed out after {self.timeout_seconds}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise RecognitionError(f"Transcription request for {audio_path.name} failed: {exc}") from exc

        if response.status_code >= 400:
            raise RecognitionError(
                f"OpenAI transcription failed ({response.status_code}): {response.text[:400]}",
                status_code=response.status_code,
            )

        if request.expects_text:
            return response.text

        try:
            payload = response.json()
        except ValueError as exc:
            raise RecognitionError("OpenAI transcription response was not valid JSON") from exc
        if not isinstance(payload, dict):
            raise RecognitionError("OpenAI transcription response was not a JSON object")
        logger.debug("Received %s response for %s", request.response_format, audio_path.name)
        return payload
