"""Segment dispatch strategies.

``ParallelDispatcher`` is the default: segments are independent and go out
through a bounded worker pool. ``SequentialDispatcher`` trades throughput
for accuracy by feeding the tail of each segment's text to the next one as
prompt context and, for the diarized model, by seeding later segments with
voice samples cut from earlier ones. Both share the retry policy and the
rate limiter.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Collection, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from threading import Event, Lock
from typing import Callable, Sequence

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)
from tenacity.stop import stop_base

from audio_transcribe_mcp.exceptions import JobCancelledError, RecognitionError, TranscriptionError
from audio_transcribe_mcp.progress import ProgressStream
from audio_transcribe_mcp.services.model_profiles import MAX_SPEAKER_REFERENCES, ModelProfile, RecognitionRequest
from audio_transcribe_mcp.services.transcriber import Recognizer
from audio_transcribe_mcp.types import (
    DispatchStrategy,
    FailedSegment,
    Segment,
    SegmentResult,
    SpeakerReference,
)

logger = logging.getLogger(__name__)

CONTEXT_TAIL_CHARS = 200
VOICE_SAMPLE_SECONDS = 5.0

VoiceSampler = Callable[[Path, float, float], Path]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_seconds: float = 1.0

    def stop(self, cancel_event: Event | None = None) -> stop_base:
        stop = stop_after_attempt(self.max_attempts)
        if cancel_event is not None:
            return stop | stop_when_event_set(cancel_event)
        return stop

    def wait(self) -> wait_exponential:
        return wait_exponential(multiplier=self.initial_backoff_seconds)


class RateLimiter:
    """Sliding-window request limiter shared by all workers of a pipeline."""

    def __init__(
        self,
        max_requests: int = 80,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = Lock()

    def acquire(self, cancel_event: Event | None = None) -> bool:
        """Block until a request slot is free. Returns False if cancelled while waiting."""
        if self.max_requests <= 0:
            return True
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return False
            with self._lock:
                now = self._clock()
                while self._timestamps and self._timestamps[0] <= now - self.window_seconds:
                    self._timestamps.popleft()
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return True
                wait = max(self._timestamps[0] + self.window_seconds - now, 0.0)
            logger.info("Rate limit reached, waiting %.1fs", wait)
            if cancel_event is not None:
                cancel_event.wait(wait)
            else:
                self._sleep(wait)


@dataclass(slots=True)
class DispatchReport:
    results: dict[int, SegmentResult] = field(default_factory=dict)
    failed: list[FailedSegment] = field(default_factory=list)

    def record(self, outcome: SegmentResult | FailedSegment) -> None:
        if isinstance(outcome, SegmentResult):
            self.results[outcome.index] = outcome
        else:
            self.failed.append(outcome)

    def ordered_payloads(self, segments: Sequence[Segment]) -> list[object | None]:
        """Payloads in segment order, ``None`` where a segment failed."""
        payloads: list[object | None] = []
        for segment in sorted(segments, key=lambda item: item.index):
            result = self.results.get(segment.index)
            payloads.append(result.payload if result is not None else None)
        return payloads


class SegmentDispatcher:
    def __init__(
        self,
        recognizer: Recognizer,
        *,
        retry: RetryPolicy | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.recognizer = recognizer
        self.retry = retry or RetryPolicy()
        self.rate_limiter = rate_limiter

    def dispatch(
        self,
        segments: Sequence[Segment],
        profile: ModelProfile,
        *,
        prompt: str | None = None,
        speakers: Sequence[SpeakerReference] = (),
        progress: ProgressStream | None = None,
        cancel_event: Event | None = None,
    ) -> DispatchReport:
        raise NotImplementedError

    def _recognize_once(self, path: Path, profile: ModelProfile, request: RecognitionRequest) -> object:
        payload = self.recognizer.transcribe(path, request)
        if not profile.has_content(payload):
            raise RecognitionError("Received empty transcription from API")
        return payload

    def recognize_with_retry(
        self,
        segment: Segment,
        total: int,
        profile: ModelProfile,
        request: RecognitionRequest,
        *,
        progress: ProgressStream | None = None,
        cancel_event: Event | None = None,
    ) -> SegmentResult | FailedSegment:
        number = segment.index + 1
        cancelled = FailedSegment(index=segment.index, duration=segment.duration, error="cancelled")
        if cancel_event is not None and cancel_event.is_set():
            return cancelled

        def before_attempt(retry_state: RetryCallState) -> None:
            attempt = retry_state.attempt_number
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError()
            if self.rate_limiter is not None and not self.rate_limiter.acquire(cancel_event):
                raise JobCancelledError()
            if progress is not None:
                message = (
                    f"Transcribing chunk {number} of {total}..."
                    if attempt == 1
                    else f"Retrying chunk {number} (attempt {attempt}/{self.retry.max_attempts})..."
                )
                progress.emit("transcribing", message, current=number, total=total, attempt=attempt)

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome is not None else None
            logger.warning("Chunk %d attempt %d failed: %s", number, retry_state.attempt_number, error)
            if retry_state.next_action is not None:
                logger.info("Waiting %.1fs before retrying chunk %d", retry_state.next_action.sleep, number)

        retrying = Retrying(
            stop=self.retry.stop(cancel_event),
            wait=self.retry.wait(),
            retry=retry_if_exception_type((RecognitionError, OSError)),
            sleep=cancel_event.wait if cancel_event is not None else time.sleep,
            before=before_attempt,
            before_sleep=before_sleep,
        )
        try:
            payload = retrying(self._recognize_once, segment.path, profile, request)
        except JobCancelledError:
            return cancelled
        except RetryError as exc:
            if cancel_event is not None and cancel_event.is_set():
                return cancelled
            error = exc.last_attempt.exception()
            last_error = str(error) if error is not None else "not attempted"
            logger.error("Chunk %d failed after %d attempts: %s", number, self.retry.max_attempts, last_error)
            return FailedSegment(index=segment.index, duration=segment.duration, error=last_error)

        attempts = retrying.statistics.get("attempt_number", 1)
        if attempts > 1:
            logger.info("Chunk %d transcribed after %d attempts", number, attempts)
        else:
            logger.info("Chunk %d transcribed", number)
        return SegmentResult(index=segment.index, duration=segment.duration, payload=payload)


class ParallelDispatcher(SegmentDispatcher):
    def __init__(
        self,
        recognizer: Recognizer,
        *,
        max_workers: int = 5,
        retry: RetryPolicy | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        super().__init__(recognizer, retry=retry, rate_limiter=rate_limiter)
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.max_workers = max_workers

    def dispatch(
        self,
        segments: Sequence[Segment],
        profile: ModelProfile,
        *,
        prompt: str | None = None,
        speakers: Sequence[SpeakerReference] = (),
        progress: ProgressStream | None = None,
        cancel_event: Event | None = None,
    ) -> DispatchReport:
        report = DispatchReport()
        if not segments:
            return report

        total = len(segments)

        def run(segment: Segment) -> SegmentResult | FailedSegment:
            # speaker references ride only on the first segment
            request = profile.build_request(
                prompt=prompt,
                speakers=speakers if segment.index == 0 else (),
            )
            return self.recognize_with_retry(
                segment,
                total,
                profile,
                request,
                progress=progress,
                cancel_event=cancel_event,
            )

        workers = min(self.max_workers, total)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="transcribe-chunk") as executor:
            futures = [executor.submit(run, segment) for segment in segments]
            for future in as_completed(futures):
                report.record(future.result())

        logger.info(
            "Dispatched %d chunks with %d workers: %d succeeded, %d failed",
            total,
            workers,
            len(report.results),
            len(report.failed),
        )
        return report


def pick_voice_samples(payload: object, known: Collection[str]) -> list[tuple[str, float, float]]:
    """Choose ``(speaker, start, duration)`` clips for speakers not in ``known``.

    Each new speaker contributes their longest diarized segment, trimmed to
    :data:`VOICE_SAMPLE_SECONDS`.
    """
    if not isinstance(payload, Mapping) or not isinstance(payload.get("segments"), list):
        return []

    longest: dict[str, tuple[float, float]] = {}
    for item in payload["segments"]:
        if not isinstance(item, Mapping):
            continue
        speaker = str(item.get("speaker") or "").strip()
        if not speaker or speaker in known:
            continue
        try:
            start = float(item.get("start") or 0.0)
            end = float(item.get("end") or 0.0)
        except (TypeError, ValueError):
            continue
        if end <= start:
            continue
        if speaker not in longest or end - start > longest[speaker][1]:
            longest[speaker] = (start, end - start)

    return [(speaker, start, min(length, VOICE_SAMPLE_SECONDS)) for speaker, (start, length) in longest.items()]


class SequentialDispatcher(SegmentDispatcher):
    def __init__(
        self,
        recognizer: Recognizer,
        *,
        retry: RetryPolicy | None = None,
        rate_limiter: RateLimiter | None = None,
        voice_sampler: VoiceSampler | None = None,
    ) -> None:
        super().__init__(recognizer, retry=retry, rate_limiter=rate_limiter)
        self.voice_sampler = voice_sampler

    @staticmethod
    def chained_prompt(prompt: str | None, previous_text: str) -> str | None:
        if not previous_text:
            return prompt
        tail = previous_text[-CONTEXT_TAIL_CHARS:]
        if prompt:
            return f"{prompt}\n\nPrevious context: {tail}"
        return tail

    def dispatch(
        self,
        segments: Sequence[Segment],
        profile: ModelProfile,
        *,
        prompt: str | None = None,
        speakers: Sequence[SpeakerReference] = (),
        progress: ProgressStream | None = None,
        cancel_event: Event | None = None,
    ) -> DispatchReport:
        report = DispatchReport()
        ordered = sorted(segments, key=lambda item: item.index)
        total = len(ordered)
        seeding = profile.diarized and self.voice_sampler is not None
        references = list(speakers)
        previous_text = ""
        for position, segment in enumerate(ordered):
            if cancel_event is not None and cancel_event.is_set():
                break
            chunk_prompt = self.chained_prompt(prompt, previous_text) if profile.accepts_prompt else None
            if seeding:
                chunk_speakers: Sequence[SpeakerReference] = list(references)
            else:
                chunk_speakers = speakers if segment.index == 0 else ()
            request = profile.build_request(prompt=chunk_prompt, speakers=chunk_speakers)
            outcome = self.recognize_with_retry(
                segment,
                total,
                profile,
                request,
                progress=progress,
                cancel_event=cancel_event,
            )
            report.record(outcome)
            if not isinstance(outcome, SegmentResult):
                previous_text = ""
                continue
            previous_text = profile.plain_text(outcome.payload)
            if seeding and position < total - 1:
                self._collect_voice_samples(segment, outcome.payload, references)
        return report

    def _collect_voice_samples(
        self,
        segment: Segment,
        payload: object,
        references: list[SpeakerReference],
    ) -> None:
        if self.voice_sampler is None:
            return
        known = {reference.name for reference in references}
        added = 0
        for name, start, duration in pick_voice_samples(payload, known):
            if len(references) >= MAX_SPEAKER_REFERENCES:
                logger.info("Speaker reference limit reached, not sampling speaker %s", name)
                break
            try:
                path = self.voice_sampler(segment.path, start, duration)
            except (TranscriptionError, OSError) as exc:
                logger.warning("Failed to extract voice sample for speaker %s: %s", name, exc)
                continue
            references.append(SpeakerReference(name=name, path=path))
            added += 1
        if added:
            logger.info("Extracted %d speaker samples from chunk %d", added, segment.index + 1)


def build_dispatcher(
    strategy: DispatchStrategy,
    recognizer: Recognizer,
    *,
    max_workers: int = 5,
    retry: RetryPolicy | None = None,
    rate_limiter: RateLimiter | None = None,
    voice_sampler: VoiceSampler | None = None,
) -> SegmentDispatcher:
    if strategy == "sequential":
        return SequentialDispatcher(
            recognizer,
            retry=retry,
            rate_limiter=rate_limiter,
            voice_sampler=voice_sampler,
        )
    if strategy == "parallel":
        return ParallelDispatcher(recognizer, max_workers=max_workers, retry=retry, rate_limiter=rate_limiter)
    raise ValueError(f"Unknown dispatch strategy: {strategy}")
