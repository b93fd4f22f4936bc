"""End-to-end transcription of one audio file.

A job moves through ``planning -> (transcoding) -> (splitting) -> recognizing
-> combining -> done``, or ends in ``failed``. Post-processing always runs in
the same order: transcode, speed adjustment, compression, size check, split.
Every intermediate file is registered with the job's :class:`ArtifactRegistry`
and removed before :meth:`TranscriptionPipeline.run` returns.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from threading import Event
from typing import Sequence

from audio_transcribe_mcp.exceptions import (
    ConversionError,
    FileTooLargeError,
    InvalidInputError,
    JobCancelledError,
    ToolUnavailableError,
    TranscriptionError,
)
from audio_transcribe_mcp.progress import ProgressStream
from audio_transcribe_mcp.services import captions
from audio_transcribe_mcp.services.artifacts import ArtifactRegistry
from audio_transcribe_mcp.services.dispatch import RateLimiter, RetryPolicy, SegmentDispatcher, build_dispatcher
from audio_transcribe_mcp.services.model_profiles import MAX_SPEAKER_REFERENCES, ModelProfile, get_profile
from audio_transcribe_mcp.services.planner import API_LIMIT_MB, DEFAULT_CEILING_MB, ChunkPlanner
from audio_transcribe_mcp.services.transcoder import MediaTranscoder
from audio_transcribe_mcp.services.transcriber import Recognizer
from audio_transcribe_mcp.types import (
    FailedSegment,
    PipelineState,
    Segment,
    SegmentResult,
    SpeakerReference,
    Transcript,
    TranscriptionJob,
    TranscriptionOutcome,
)
from audio_transcribe_mcp.utils.paths import validate_audio_path

logger = logging.getLogger(__name__)

MIN_SPEED = 1.0
MAX_SPEED = 3.0


@dataclass(slots=True, frozen=True)
class PipelineOptions:
    ceiling_mb: float = DEFAULT_CEILING_MB
    limit_mb: float = API_LIMIT_MB
    max_workers: int = 5
    max_retries: int = 3
    initial_backoff_seconds: float = 1.0
    max_requests_per_minute: int = 80
    temp_dir: Path | None = None


@dataclass(slots=True)
class _RunContext:
    job: TranscriptionJob
    artifacts: ArtifactRegistry
    progress: ProgressStream
    cancel_event: Event | None
    state: PipelineState = "planning"

    def enter(self, state: PipelineState) -> None:
        logger.debug("Job for %s: %s -> %s", self.job.source_path, self.state, state)
        self.state = state

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise JobCancelledError()


def missing_audio_percentage(failed: Sequence[FailedSegment], segments: Sequence[Segment]) -> float:
    total = sum(segment.duration for segment in segments)
    if total <= 0:
        return 0.0
    return sum(item.duration for item in failed) / total * 100


def partial_failure_warning(failed: Sequence[FailedSegment], segments: Sequence[Segment]) -> str | None:
    if not failed:
        return None
    percentage = missing_audio_percentage(failed, segments)
    return (
        f"{len(failed)} of {len(segments)} chunks failed to transcribe "
        f"({percentage:.1f}% of audio missing). The transcript is incomplete."
    )


class TranscriptionPipeline:
    def __init__(
        self,
        *,
        transcoder: MediaTranscoder,
        recognizer: Recognizer,
        options: PipelineOptions | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.transcoder = transcoder
        self.recognizer = recognizer
        self.options = options or PipelineOptions()
        self.planner = ChunkPlanner(ceiling_mb=self.options.ceiling_mb, limit_mb=self.options.limit_mb)
        self.retry = RetryPolicy(
            max_attempts=self.options.max_retries,
            initial_backoff_seconds=self.options.initial_backoff_seconds,
        )
        self.rate_limiter = rate_limiter or RateLimiter(self.options.max_requests_per_minute)

    def run(
        self,
        job: TranscriptionJob,
        progress: ProgressStream | None = None,
        cancel_event: Event | None = None,
    ) -> TranscriptionOutcome:
        """Run ``job`` to completion. Never raises for expected failures."""
        progress = progress or ProgressStream()
        context: _RunContext | None = None
        try:
            with ArtifactRegistry(self.options.temp_dir) as artifacts:
                context = _RunContext(job=job, artifacts=artifacts, progress=progress, cancel_event=cancel_event)
                outcome = self._execute(context)
                context.enter("done")
                return outcome
        except TranscriptionError as exc:
            if context is not None:
                context.enter("failed")
            logger.warning("Transcription of %s failed: %s", job.source_path, exc)
            return TranscriptionOutcome.failure(str(exc))
        except Exception:  # pylint: disable=broad-except
            if context is not None:
                context.enter("failed")
            logger.exception("Unexpected error while transcribing %s", job.source_path)
            return TranscriptionOutcome.failure("Transcription failed due to an unexpected error")

    def _execute(self, context: _RunContext) -> TranscriptionOutcome:
        job = context.job
        profile = get_profile(job.model)
        source = validate_audio_path(job.source_path)
        speakers = self._validate_speakers(job.speakers, profile)
        speed = self._validate_speed(job.speed)
        context.check_cancelled()

        working = source
        if self.transcoder.needs_transcode(source):
            self._require_tools(
                f"{source.suffix.lstrip('.').upper()} recordings require FFmpeg for conversion, "
                "which could not be found on this system.\n\n"
                "Please try uploading an MP3 or WAV file instead, or install FFmpeg."
            )
            context.enter("transcoding")
            context.progress.emit("converting", "Converting recording to MP3 format...")
            working = self.transcoder.transcode(working, context.artifacts.allocate("converted", ".mp3"))
            context.check_cancelled()

        if speed is not None:
            self._require_tools("Speed optimization requires FFmpeg, which could not be found on this system.")
            context.enter("transcoding")
            context.progress.emit("optimizing", f"Optimizing audio speed ({speed:g}x)...")
            working = self.transcoder.adjust_speed(working, speed, context.artifacts.allocate("optimized", ".mp3"))
            context.check_cancelled()

        if job.compress:
            working = self._compress(context, working)
            context.check_cancelled()

        size_bytes = working.stat().st_size
        if self.planner.needs_split(size_bytes):
            if not self.transcoder.available:
                raise FileTooLargeError(self.planner.size_mb(size_bytes), self.options.limit_mb)
            segments = self._split(context, working, size_bytes)
            return self._recognize_segments(context, profile, segments, speakers, speed)

        return self._recognize_single(context, profile, working, speakers, speed)

    def _require_tools(self, message: str) -> None:
        if not self.transcoder.available:
            raise ToolUnavailableError(message)

    @staticmethod
    def _validate_speed(speed: float | None) -> float | None:
        if speed is None or speed == MIN_SPEED:
            return None
        if math.isnan(speed) or speed <= MIN_SPEED or speed > MAX_SPEED:
            raise InvalidInputError(
                f"Speed multiplier must be greater than {MIN_SPEED:g} and at most {MAX_SPEED:g}, got {speed}"
            )
        return float(speed)

    @staticmethod
    def _validate_speakers(
        speakers: Sequence[SpeakerReference],
        profile: ModelProfile,
    ) -> list[SpeakerReference]:
        if not speakers:
            return []
        if not profile.diarized:
            logger.info("Ignoring %d speaker references for non-diarized model %s", len(speakers), profile.model)
            return []
        if len(speakers) > MAX_SPEAKER_REFERENCES:
            raise InvalidInputError(
                f"At most {MAX_SPEAKER_REFERENCES} speaker references are supported, got {len(speakers)}"
            )
        validated: list[SpeakerReference] = []
        for reference in speakers:
            name = reference.name.strip()
            if not name:
                raise InvalidInputError("Speaker reference names must not be empty")
            validated.append(SpeakerReference(name=name, path=validate_audio_path(reference.path)))
        return validated

    def _compress(self, context: _RunContext, working: Path) -> Path:
        if not self.transcoder.available:
            logger.warning("Skipping compression: FFmpeg is not available")
            return working
        context.progress.emit("compressing", "Compressing audio...")
        output = context.artifacts.allocate("compressed", ".ogg")
        try:
            return self.transcoder.compress(working, output)
        except (ConversionError, ToolUnavailableError) as exc:
            logger.warning("Compression failed, continuing with uncompressed audio: %s", exc)
            return working

    def _split(self, context: _RunContext, working: Path, size_bytes: int) -> list[Segment]:
        context.enter("splitting")
        duration = self.transcoder.probe_duration(working)
        plan = self.planner.plan(size_bytes, duration)
        context.progress.emit(
            "splitting",
            f"Splitting large audio file into {plan.segment_count} chunks...",
            total=plan.segment_count,
        )
        logger.info(
            "Splitting %.0f min audio into %d chunks of %ds",
            duration / 60,
            plan.segment_count,
            plan.segment_duration,
        )

        chunk_dir = context.artifacts.make_dir("chunks")
        segments: list[Segment] = []
        for window in plan.windows():
            context.check_cancelled()
            output = context.artifacts.allocate(f"chunk-{window.index:03d}", ".mp3", directory=chunk_dir)
            path = self.transcoder.cut_segment(working, window.start, window.duration, output)
            segments.append(Segment(index=window.index, path=path, duration=self.transcoder.probe_duration(path)))
        return segments

    def _recognize_single(
        self,
        context: _RunContext,
        profile: ModelProfile,
        working: Path,
        speakers: Sequence[SpeakerReference],
        speed: float | None,
    ) -> TranscriptionOutcome:
        context.enter("recognizing")
        segment = Segment(index=0, path=working, duration=0.0)
        dispatcher = SegmentDispatcher(self.recognizer, retry=self.retry, rate_limiter=self.rate_limiter)
        result = dispatcher.recognize_with_retry(
            segment,
            1,
            profile,
            profile.build_request(prompt=context.job.prompt, speakers=speakers),
            progress=context.progress,
            cancel_event=context.cancel_event,
        )
        context.check_cancelled()
        if not isinstance(result, SegmentResult):
            logger.error("Transcription of %s failed: %s", working.name, result.error)
            raise TranscriptionError(
                f"Transcription failed after {self.retry.max_attempts} attempts. Please try again later."
            )

        context.enter("combining")
        transcript = profile.to_transcript(result.payload)
        return self._outcome(profile, transcript, speed, chunked=False)

    def _recognize_segments(
        self,
        context: _RunContext,
        profile: ModelProfile,
        segments: list[Segment],
        speakers: Sequence[SpeakerReference],
        speed: float | None,
    ) -> TranscriptionOutcome:
        context.enter("recognizing")

        def voice_sampler(path: Path, start: float, duration: float) -> Path:
            output = context.artifacts.allocate("voice-sample", ".mp3")
            return self.transcoder.extract_voice_sample(path, start, duration, output)

        dispatcher = build_dispatcher(
            context.job.strategy,
            self.recognizer,
            max_workers=self.options.max_workers,
            retry=self.retry,
            rate_limiter=self.rate_limiter,
            voice_sampler=voice_sampler if profile.diarized else None,
        )
        report = dispatcher.dispatch(
            segments,
            profile,
            prompt=context.job.prompt,
            speakers=speakers,
            progress=context.progress,
            cancel_event=context.cancel_event,
        )
        context.check_cancelled()

        if len(report.failed) == len(segments):
            raise TranscriptionError(
                f"All {len(segments)} chunks failed to transcribe. Please try again later."
            )

        context.enter("combining")
        context.progress.emit("combining", "Combining transcripts...")
        failed = sorted(report.failed, key=lambda item: item.index)
        transcript = profile.combine(report.ordered_payloads(segments), [segment.duration for segment in segments])

        outcome = self._outcome(profile, transcript, speed, chunked=True)
        outcome.total_chunks = len(segments)
        outcome.failed_chunks = failed
        outcome.warning = partial_failure_warning(failed, segments)
        if outcome.warning:
            logger.warning("%s: %s", context.job.source_path, outcome.warning)
        return outcome

    @staticmethod
    def _outcome(
        profile: ModelProfile,
        transcript: Transcript,
        speed: float | None,
        *,
        chunked: bool,
    ) -> TranscriptionOutcome:
        if speed is not None:
            transcript = captions.scale_transcript(transcript, speed)
        text = captions.to_plain_text(transcript)
        if profile.diarized:
            text = captions.group_by_speaker(text)
        return TranscriptionOutcome(
            success=True,
            text=text,
            transcript=captions.render(transcript),
            chunked=chunked,
            is_diarized=profile.diarized,
        )
