from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

JobStatus = Literal["queued", "running", "completed", "failed", "cancelled"]
PipelineState = Literal[
    "planning",
    "transcoding",
    "splitting",
    "recognizing",
    "combining",
    "done",
    "failed",
]
ProgressStage = Literal[
    "converting",
    "optimizing",
    "compressing",
    "splitting",
    "transcribing",
    "combining",
]
DispatchStrategy = Literal["parallel", "sequential"]

CAPTION_HEADER = "WEBVTT"


@dataclass(slots=True, frozen=True)
class SpeakerReference:
    name: str
    path: Path


@dataclass(slots=True)
class TranscriptionJob:
    source_path: Path
    model: str = "gpt-4o-transcribe"
    prompt: str | None = None
    speakers: list[SpeakerReference] = field(default_factory=list)
    speed: float | None = None
    compress: bool = False
    strategy: DispatchStrategy = "parallel"


@dataclass(slots=True, frozen=True)
class Segment:
    index: int
    path: Path
    duration: float


@dataclass(slots=True, frozen=True)
class SegmentResult:
    index: int
    duration: float
    payload: Any


@dataclass(slots=True, frozen=True)
class FailedSegment:
    index: int
    duration: float
    error: str


@dataclass(slots=True)
class Cue:
    start: float
    end: float
    text: str


@dataclass(slots=True)
class Transcript:
    """Canonical caption document.

    ``body`` holds untimed text for backends that return no cue timing; it is
    rendered directly under the header instead of as a cue block.
    """

    cues: list[Cue] = field(default_factory=list)
    diarized: bool = False
    body: str | None = None
    header: str = CAPTION_HEADER


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    stage: ProgressStage
    message: str
    current: int | None = None
    total: int | None = None
    attempt: int | None = None


@dataclass(slots=True)
class TranscriptionOutcome:
    success: bool
    text: str = ""
    transcript: str = ""
    chunked: bool = False
    total_chunks: int | None = None
    is_diarized: bool = False
    warning: str | None = None
    failed_chunks: list[FailedSegment] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def failure(cls, message: str) -> TranscriptionOutcome:
        return cls(success=False, error=message)

    def to_dict(self) -> dict[str, object]:
        if not self.success:
            return {"success": False, "error": self.error or "Transcription failed"}

        payload: dict[str, object] = {
            "success": True,
            "text": self.text,
            "transcript": self.transcript,
            "chunked": self.chunked,
            "is_diarized": self.is_diarized,
        }
        if self.total_chunks is not None:
            payload["total_chunks"] = self.total_chunks
        if self.warning:
            payload["warning"] = self.warning
        if self.failed_chunks:
            payload["failed_chunks"] = [
                {"index": item.index + 1, "duration": item.duration}
                for item in self.failed_chunks
            ]
        return payload
