from __future__ import annotations

import time
from pathlib import Path
from typing import Any

from fastmcp import FastMCP
from mcp.types import ToolAnnotations

from audio_transcribe_mcp.jobs import FINAL_STATUSES, JobsRegistry
from audio_transcribe_mcp.services.model_profiles import PROFILES
from audio_transcribe_mcp.types import DispatchStrategy, SpeakerReference, TranscriptionJob

MAX_POLL_DELAY_SECONDS = 30.0


def _speaker_references(speakers: list[dict[str, str]] | None) -> list[SpeakerReference]:
    references: list[SpeakerReference] = []
    for item in speakers or []:
        name = str(item.get("name", "")).strip()
        path = str(item.get("path", "")).strip()
        if not name or not path:
            raise ValueError("Each speaker reference needs a non-empty 'name' and 'path'")
        references.append(SpeakerReference(name=name, path=Path(path)))
    return references


class ToolRegistry:
    def __init__(
        self,
        jobs: JobsRegistry,
        *,
        default_strategy: DispatchStrategy = "parallel",
        poll_base_seconds: float = 1.0,
    ) -> None:
        self.jobs = jobs
        self.default_strategy = default_strategy
        self.poll_base_seconds = poll_base_seconds

    def register(self, mcp: FastMCP) -> None:
        _ro = ToolAnnotations(readOnlyHint=True)

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False))
        def transcribe_audio(
            path: str,
            model: str = "gpt-4o-transcribe",
            prompt: str | None = None,
            speakers: list[dict[str, str]] | None = None,
            speed: float | None = None,
            compress: bool = False,
            strategy: str | None = None,
        ) -> dict[str, Any]:
            """Queue a local audio file for transcription.

            Args:
                path: Absolute path to the audio file
                model: "whisper-1", "gpt-4o-transcribe" or "gpt-4o-transcribe-diarize"
                prompt: Optional vocabulary or context hint (ignored by the diarize model)
                speakers: Up to 4 {"name", "path"} voice samples for the diarize model
                speed: Playback multiplier above 1.0 and up to 3.0 to cut upload size
                compress: Re-encode to low-bitrate Opus before upload
                strategy: "parallel" (default) or "sequential" with prompt chaining

            Returns:
                The queued job id and status. Poll job_status for the result.
            """
            if model not in PROFILES:
                return {"error": "unsupported_model", "supported_models": sorted(PROFILES)}

            chosen = (strategy or self.default_strategy).strip().lower()
            if chosen not in ("parallel", "sequential"):
                return {"error": "unsupported_strategy", "supported_strategies": ["parallel", "sequential"]}

            try:
                references = _speaker_references(speakers)
            except ValueError as exc:
                return {"error": "invalid_speakers", "message": str(exc)}

            job = self.jobs.enqueue(
                TranscriptionJob(
                    source_path=Path(path),
                    model=model,
                    prompt=prompt or None,
                    speakers=references,
                    speed=speed,
                    compress=compress,
                    strategy="sequential" if chosen == "sequential" else "parallel",
                )
            )
            return {"job_id": job["id"], "status": job["status"]}

        @mcp.tool(annotations=_ro)
        def job_status(job_id: str) -> dict[str, Any]:
            job = self.jobs.get(job_id)
            if job is None:
                return {"error": "job_not_found", "job_id": job_id}

            if job["status"] not in FINAL_STATUSES:
                poll_count = self.jobs.increment_poll_count(job_id)
                delay = min(self.poll_base_seconds * (2 ** (poll_count - 1)), MAX_POLL_DELAY_SECONDS)
                time.sleep(delay)
                # Re-fetch in case it finished while we waited
                job = self.jobs.get(job_id) or job

            return job

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        def cancel_job(job_id: str) -> dict[str, Any]:
            job = self.jobs.get(job_id)
            if job is None:
                return {"error": "job_not_found", "job_id": job_id}
            cancelled = self.jobs.request_cancel(job_id)
            current = self.jobs.get(job_id) or job
            return {"job_id": job_id, "cancel_requested": cancelled, "status": current["status"]}
