"""Request shaping and response handling for each recognition model.

The set of models is closed: each variant knows which response format to ask
for, whether it accepts a prompt or speaker references, how to tell an empty
answer from a real one, and how to fold per-segment answers into a single
:class:`Transcript`. The pipeline picks one profile at job start and never
branches on the model name again.
"""

from __future__ import annotations

import base64
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import ClassVar

from audio_transcribe_mcp.exceptions import InvalidInputError
from audio_transcribe_mcp.services import captions
from audio_transcribe_mcp.types import SpeakerReference, Transcript
from audio_transcribe_mcp.utils.paths import audio_mime_type

MAX_SPEAKER_REFERENCES = 4


@dataclass(slots=True)
class RecognitionRequest:
    model: str
    response_format: str
    prompt: str | None = None
    chunking_strategy: str | None = None
    speaker_names: list[str] = field(default_factory=list)
    speaker_references: list[str] = field(default_factory=list)

    @property
    def expects_text(self) -> bool:
        return self.response_format in ("vtt", "srt", "text")

    def form_fields(self) -> dict[str, str | list[str]]:
        fields: dict[str, str | list[str]] = {
            "model": self.model,
            "response_format": self.response_format,
        }
        if self.prompt:
            fields["prompt"] = self.prompt
        if self.chunking_strategy:
            fields["chunking_strategy"] = self.chunking_strategy
        if self.speaker_names:
            fields["known_speaker_names[]"] = list(self.speaker_names)
            fields["known_speaker_references[]"] = list(self.speaker_references)
        return fields


def speaker_data_url(reference: SpeakerReference) -> str:
    encoded = base64.b64encode(reference.path.read_bytes()).decode("ascii")
    return f"data:{audio_mime_type(reference.path)};base64,{encoded}"


class ModelProfile:
    model: ClassVar[str]
    response_format: ClassVar[str]
    accepts_prompt: ClassVar[bool] = True
    diarized: ClassVar[bool] = False

    def build_request(
        self,
        *,
        prompt: str | None = None,
        speakers: Sequence[SpeakerReference] = (),
    ) -> RecognitionRequest:
        return RecognitionRequest(
            model=self.model,
            response_format=self.response_format,
            prompt=prompt if self.accepts_prompt else None,
        )

    def has_content(self, payload: object) -> bool:
        raise NotImplementedError

    def plain_text(self, payload: object) -> str:
        raise NotImplementedError

    def to_transcript(self, payload: object) -> Transcript:
        raise NotImplementedError

    def combine(self, payloads: Sequence[object | None], durations: Sequence[float]) -> Transcript:
        raise NotImplementedError


class CaptionProfile(ModelProfile):
    model = "whisper-1"
    response_format = "vtt"

    def has_content(self, payload: object) -> bool:
        return isinstance(payload, str) and bool(payload.strip())

    def plain_text(self, payload: object) -> str:
        return " ".join(captions.to_plain_text(str(payload or "")).split("\n")).strip()

    def to_transcript(self, payload: object) -> Transcript:
        return Transcript(cues=captions.parse_captions(str(payload or "")))

    def combine(self, payloads: Sequence[object | None], durations: Sequence[float]) -> Transcript:
        return captions.combine_caption_segments([str(item) if item else None for item in payloads], durations)


class FlatJsonProfile(ModelProfile):
    model = "gpt-4o-transcribe"
    response_format = "json"

    def has_content(self, payload: object) -> bool:
        return isinstance(payload, Mapping) and bool(str(payload.get("text") or "").strip())

    def plain_text(self, payload: object) -> str:
        return str(payload.get("text") or "").strip() if isinstance(payload, Mapping) else ""

    def to_transcript(self, payload: object) -> Transcript:
        return captions.json_to_captions(payload if isinstance(payload, Mapping) else None)

    def combine(self, payloads: Sequence[object | None], durations: Sequence[float]) -> Transcript:
        return captions.combine_text_segments(
            [item if isinstance(item, Mapping) else None for item in payloads],
            durations,
        )


class DiarizedProfile(ModelProfile):
    model = "gpt-4o-transcribe-diarize"
    response_format = "diarized_json"
    accepts_prompt = False
    diarized = True

    def build_request(
        self,
        *,
        prompt: str | None = None,
        speakers: Sequence[SpeakerReference] = (),
    ) -> RecognitionRequest:
        request = RecognitionRequest(
            model=self.model,
            response_format=self.response_format,
            chunking_strategy="auto",
        )
        for reference in speakers:
            request.speaker_names.append(reference.name)
            request.speaker_references.append(speaker_data_url(reference))
        return request

    def has_content(self, payload: object) -> bool:
        if not isinstance(payload, Mapping):
            return False
        segments = payload.get("segments")
        return isinstance(segments, list) and len(segments) > 0

    def plain_text(self, payload: object) -> str:
        if not isinstance(payload, Mapping) or not isinstance(payload.get("segments"), list):
            return ""
        return " ".join(
            str(item.get("text") or "").strip()
            for item in payload["segments"]
            if isinstance(item, Mapping)
        ).strip()

    def to_transcript(self, payload: object) -> Transcript:
        return captions.diarized_json_to_captions(payload if isinstance(payload, Mapping) else None)

    def combine(self, payloads: Sequence[object | None], durations: Sequence[float]) -> Transcript:
        return captions.combine_diarized_segments(
            [item if isinstance(item, Mapping) else None for item in payloads],
            durations,
        )


PROFILES: dict[str, ModelProfile] = {
    profile.model: profile for profile in (CaptionProfile(), FlatJsonProfile(), DiarizedProfile())
}


def get_profile(model: str) -> ModelProfile:
    try:
        return PROFILES[model]
    except KeyError:
        raise InvalidInputError(
            f"Unsupported model: {model}. Supported models: {', '.join(PROFILES)}"
        ) from None
