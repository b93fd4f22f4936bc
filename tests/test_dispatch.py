from pathlib import Path
from threading import Event, Lock

import pytest

from audio_transcribe_mcp.exceptions import ConversionError, RecognitionError
from audio_transcribe_mcp.progress import ProgressStream
from audio_transcribe_mcp.services.dispatch import (
    ParallelDispatcher,
    RateLimiter,
    RetryPolicy,
    SequentialDispatcher,
    build_dispatcher,
    pick_voice_samples,
)
from audio_transcribe_mcp.services.model_profiles import RecognitionRequest, get_profile
from audio_transcribe_mcp.types import FailedSegment, Segment, SegmentResult, SpeakerReference

NO_WAIT = RetryPolicy(max_attempts=3, initial_backoff_seconds=0)


class FakeRecognizer:
    def __init__(self, failures: dict[str, int] | None = None, empty: set[str] | None = None) -> None:
        self.failures = dict(failures or {})
        self.empty = empty or set()
        self.calls: list[tuple[str, RecognitionRequest]] = []
        self._lock = Lock()

    def transcribe(self, audio_path: Path, request: RecognitionRequest) -> object:
        with self._lock:
            self.calls.append((audio_path.name, request))
            remaining = self.failures.get(audio_path.name, 0)
            if remaining:
                self.failures[audio_path.name] = remaining - 1
                raise RecognitionError("backend unavailable", status_code=503)
        if audio_path.name in self.empty:
            return {"text": "   "}
        return {"text": f"text of {audio_path.stem}"}


def _segments(tmp_path: Path, count: int, duration: float = 10.0) -> list[Segment]:
    segments = []
    for index in range(count):
        path = tmp_path / f"chunk-{index}.mp3"
        path.write_bytes(b"x")
        segments.append(Segment(index=index, path=path, duration=duration))
    return segments


class RecordingEvent(Event):
    """Cancel event that records backoff waits instead of blocking."""

    def __init__(self, cancel_after: int | None = None) -> None:
        super().__init__()
        self.cancel_after = cancel_after
        self.waits: list[float] = []

    def wait(self, timeout: float | None = None) -> bool:
        self.waits.append(timeout or 0.0)
        if self.cancel_after is not None and len(self.waits) >= self.cancel_after:
            self.set()
        return self.is_set()


def test_retry_backoff_is_exponential(tmp_path: Path) -> None:
    recognizer = FakeRecognizer(failures={"chunk-0.mp3": 2})
    dispatcher = SequentialDispatcher(recognizer, retry=RetryPolicy(max_attempts=3, initial_backoff_seconds=0.5))
    segment = _segments(tmp_path, 1)[0]
    profile = get_profile("gpt-4o-transcribe")
    cancel = RecordingEvent()

    result = dispatcher.recognize_with_retry(segment, 1, profile, profile.build_request(), cancel_event=cancel)

    assert isinstance(result, SegmentResult)
    assert cancel.waits == [0.5, 1.0]
    assert len(recognizer.calls) == 3


def test_cancel_during_backoff_stops_retrying(tmp_path: Path) -> None:
    recognizer = FakeRecognizer(failures={"chunk-0.mp3": 5})
    dispatcher = SequentialDispatcher(recognizer, retry=RetryPolicy(max_attempts=3, initial_backoff_seconds=30))
    segment = _segments(tmp_path, 1)[0]
    profile = get_profile("gpt-4o-transcribe")
    cancel = RecordingEvent(cancel_after=1)

    result = dispatcher.recognize_with_retry(segment, 1, profile, profile.build_request(), cancel_event=cancel)

    assert isinstance(result, FailedSegment)
    assert result.error == "cancelled"
    assert cancel.waits == [30.0]
    assert len(recognizer.calls) == 1


def test_transient_failure_is_retried(tmp_path: Path) -> None:
    recognizer = FakeRecognizer(failures={"chunk-0.mp3": 2})
    dispatcher = SequentialDispatcher(recognizer, retry=NO_WAIT)
    segment = _segments(tmp_path, 1)[0]
    profile = get_profile("gpt-4o-transcribe")

    result = dispatcher.recognize_with_retry(segment, 1, profile, profile.build_request())

    assert isinstance(result, SegmentResult)
    assert result.payload == {"text": "text of chunk-0"}
    assert len(recognizer.calls) == 3


def test_exhausted_retries_produce_failed_segment(tmp_path: Path) -> None:
    recognizer = FakeRecognizer(failures={"chunk-0.mp3": 5})
    dispatcher = SequentialDispatcher(recognizer, retry=NO_WAIT)
    segment = _segments(tmp_path, 1, duration=42.0)[0]
    profile = get_profile("gpt-4o-transcribe")

    result = dispatcher.recognize_with_retry(segment, 1, profile, profile.build_request())

    assert isinstance(result, FailedSegment)
    assert result.duration == 42.0
    assert "backend unavailable" in result.error
    assert len(recognizer.calls) == 3


def test_empty_response_counts_as_failure(tmp_path: Path) -> None:
    recognizer = FakeRecognizer(empty={"chunk-0.mp3"})
    dispatcher = SequentialDispatcher(recognizer, retry=NO_WAIT)
    segment = _segments(tmp_path, 1)[0]
    profile = get_profile("gpt-4o-transcribe")

    result = dispatcher.recognize_with_retry(segment, 1, profile, profile.build_request())

    assert isinstance(result, FailedSegment)
    assert len(recognizer.calls) == 3


def test_parallel_dispatch_reports_every_segment(tmp_path: Path) -> None:
    recognizer = FakeRecognizer(failures={"chunk-2.mp3": 10, "chunk-5.mp3": 10})
    dispatcher = ParallelDispatcher(recognizer, max_workers=3, retry=NO_WAIT)
    segments = _segments(tmp_path, 6)

    report = dispatcher.dispatch(segments, get_profile("gpt-4o-transcribe"))

    assert sorted(report.results) == [0, 1, 3, 4]
    assert sorted(item.index for item in report.failed) == [2, 5]
    payloads = report.ordered_payloads(segments)
    assert payloads[2] is None and payloads[5] is None
    assert payloads[3] == {"text": "text of chunk-3"}


def test_speaker_references_only_sent_with_first_segment(tmp_path: Path) -> None:
    sample = tmp_path / "alice.wav"
    sample.write_bytes(b"voice")
    recognizer = FakeRecognizer()
    dispatcher = ParallelDispatcher(recognizer, max_workers=2, retry=NO_WAIT)
    segments = _segments(tmp_path, 3)

    dispatcher.dispatch(
        segments,
        get_profile("gpt-4o-transcribe-diarize"),
        speakers=[SpeakerReference(name="Alice", path=sample)],
    )

    by_name = dict(recognizer.calls)
    assert by_name["chunk-0.mp3"].speaker_names == ["Alice"]
    assert by_name["chunk-0.mp3"].speaker_references[0].startswith("data:audio/wav;base64,")
    assert by_name["chunk-1.mp3"].speaker_names == []
    assert by_name["chunk-2.mp3"].speaker_names == []


def test_sequential_dispatch_chains_previous_text(tmp_path: Path) -> None:
    recognizer = FakeRecognizer()
    dispatcher = SequentialDispatcher(recognizer, retry=NO_WAIT)

    dispatcher.dispatch(_segments(tmp_path, 3), get_profile("gpt-4o-transcribe"), prompt="Names: Zed")

    prompts = [request.prompt for _, request in recognizer.calls]
    assert prompts[0] == "Names: Zed"
    assert prompts[1] == "Names: Zed\n\nPrevious context: text of chunk-0"
    assert prompts[2] == "Names: Zed\n\nPrevious context: text of chunk-1"


def test_chained_prompt_uses_tail_of_previous_text() -> None:
    previous = "a" * 150 + "b" * 200

    assert SequentialDispatcher.chained_prompt(None, previous) == "b" * 200
    assert SequentialDispatcher.chained_prompt("hint", "") == "hint"


def test_diarized_model_gets_no_chained_prompt(tmp_path: Path) -> None:
    class DiarizedRecognizer(FakeRecognizer):
        def transcribe(self, audio_path: Path, request: RecognitionRequest) -> object:
            super().transcribe(audio_path, request)
            return {"segments": [{"start": 0, "end": 1, "speaker": "A", "text": "hi"}]}

    recognizer = DiarizedRecognizer()
    dispatcher = SequentialDispatcher(recognizer, retry=NO_WAIT)

    dispatcher.dispatch(_segments(tmp_path, 2), get_profile("gpt-4o-transcribe-diarize"), prompt="ignored")

    assert all(request.prompt is None for _, request in recognizer.calls)
    assert all(request.chunking_strategy == "auto" for _, request in recognizer.calls)


def test_cancelled_dispatch_stops_before_next_attempt(tmp_path: Path) -> None:
    recognizer = FakeRecognizer()
    cancel = Event()
    cancel.set()

    report = SequentialDispatcher(recognizer, retry=NO_WAIT).dispatch(
        _segments(tmp_path, 3),
        get_profile("gpt-4o-transcribe"),
        cancel_event=cancel,
    )

    assert recognizer.calls == []
    assert report.results == {}


def test_progress_reports_attempts(tmp_path: Path) -> None:
    recognizer = FakeRecognizer(failures={"chunk-0.mp3": 1})
    progress = ProgressStream()

    SequentialDispatcher(recognizer, retry=NO_WAIT).dispatch(
        _segments(tmp_path, 1),
        get_profile("gpt-4o-transcribe"),
        progress=progress,
    )

    events = progress.drain()
    assert [event.attempt for event in events] == [1, 2]
    assert events[0].message == "Transcribing chunk 1 of 1..."
    assert events[1].message.startswith("Retrying chunk 1 (attempt 2/3)")


def test_rate_limiter_waits_for_window() -> None:
    now = [0.0]
    sleeps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    limiter = RateLimiter(2, 60.0, clock=lambda: now[0], sleep=fake_sleep)
    limiter.acquire()
    now[0] = 10.0
    limiter.acquire()
    limiter.acquire()

    assert sleeps == [pytest.approx(50.0)]
    assert now[0] == pytest.approx(60.0)


def test_rate_limiter_disabled_with_zero_budget() -> None:
    limiter = RateLimiter(0, clock=lambda: 0.0, sleep=lambda _: pytest.fail("should not sleep"))
    for _ in range(100):
        limiter.acquire()


def test_build_dispatcher_picks_strategy() -> None:
    recognizer = FakeRecognizer()

    assert isinstance(build_dispatcher("parallel", recognizer), ParallelDispatcher)
    assert isinstance(build_dispatcher("sequential", recognizer), SequentialDispatcher)
    with pytest.raises(ValueError):
        build_dispatcher("bogus", recognizer)  # type: ignore[arg-type]


def test_rate_limiter_wait_ends_on_cancel() -> None:
    limiter = RateLimiter(1, 60.0, clock=lambda: 0.0, sleep=lambda _: pytest.fail("should wait on the event"))
    cancel = RecordingEvent(cancel_after=1)

    assert limiter.acquire(cancel) is True
    assert limiter.acquire(cancel) is False
    assert cancel.waits == [pytest.approx(60.0)]


def test_rate_limited_attempt_is_cancelled(tmp_path: Path) -> None:
    recognizer = FakeRecognizer()
    limiter = RateLimiter(1, 60.0, clock=lambda: 0.0)
    cancel = RecordingEvent(cancel_after=1)

    report = SequentialDispatcher(recognizer, retry=NO_WAIT, rate_limiter=limiter).dispatch(
        _segments(tmp_path, 2),
        get_profile("gpt-4o-transcribe"),
        cancel_event=cancel,
    )

    assert [name for name, _ in recognizer.calls] == ["chunk-0.mp3"]
    assert [item.error for item in report.failed] == ["cancelled"]


def _diarized_payload(*turns: tuple[str, float, float]) -> dict[str, object]:
    return {
        "segments": [
            {"speaker": speaker, "start": start, "end": end, "text": f"{speaker} talking"}
            for speaker, start, end in turns
        ]
    }


def test_pick_voice_samples_takes_longest_turn_per_new_speaker() -> None:
    payload = _diarized_payload(("A", 0.0, 3.0), ("B", 3.0, 4.0), ("A", 4.0, 12.0), ("C", 12.0, 15.0))

    samples = pick_voice_samples(payload, known={"C"})

    assert samples == [("A", 4.0, 5.0), ("B", 3.0, 1.0)]
    assert pick_voice_samples({"text": "flat"}, known=set()) == []


class DiarizedSpeakers(FakeRecognizer):
    def __init__(self, turns: dict[str, list[tuple[str, float, float]]]) -> None:
        super().__init__()
        self.turns = turns

    def transcribe(self, audio_path: Path, request: RecognitionRequest) -> object:
        super().transcribe(audio_path, request)
        return _diarized_payload(*self.turns[audio_path.name])


def test_sequential_diarized_dispatch_seeds_later_segments(tmp_path: Path) -> None:
    recognizer = DiarizedSpeakers(
        {
            "chunk-0.mp3": [("A", 0.0, 8.0)],
            "chunk-1.mp3": [("A", 0.0, 2.0), ("B", 2.0, 9.0)],
            "chunk-2.mp3": [("B", 0.0, 1.0)],
        }
    )
    sampled: list[tuple[str, float, float]] = []

    def sampler(path: Path, start: float, duration: float) -> Path:
        sampled.append((path.name, start, duration))
        output = tmp_path / f"sample-{len(sampled)}.mp3"
        output.write_bytes(b"voice")
        return output

    dispatcher = SequentialDispatcher(recognizer, retry=NO_WAIT, voice_sampler=sampler)
    report = dispatcher.dispatch(_segments(tmp_path, 3), get_profile("gpt-4o-transcribe-diarize"))

    requests = dict(recognizer.calls)
    assert sorted(report.results) == [0, 1, 2]
    assert sampled == [("chunk-0.mp3", 0.0, 5.0), ("chunk-1.mp3", 2.0, 5.0)]
    assert requests["chunk-0.mp3"].speaker_names == []
    assert requests["chunk-1.mp3"].speaker_names == ["A"]
    assert requests["chunk-1.mp3"].speaker_references[0].startswith("data:audio/mpeg;base64,")
    assert requests["chunk-2.mp3"].speaker_names == ["A", "B"]


def test_voice_sample_failure_does_not_fail_segment(tmp_path: Path) -> None:
    recognizer = DiarizedSpeakers({"chunk-0.mp3": [("A", 0.0, 8.0)], "chunk-1.mp3": [("A", 0.0, 3.0)]})

    def sampler(path: Path, start: float, duration: float) -> Path:
        raise ConversionError("voice sample extraction", "Invalid data found")

    dispatcher = SequentialDispatcher(recognizer, retry=NO_WAIT, voice_sampler=sampler)
    report = dispatcher.dispatch(_segments(tmp_path, 2), get_profile("gpt-4o-transcribe-diarize"))

    assert sorted(report.results) == [0, 1]
    assert dict(recognizer.calls)["chunk-1.mp3"].speaker_names == []


def test_voice_samples_respect_reference_limit(tmp_path: Path) -> None:
    recognizer = DiarizedSpeakers(
        {
            "chunk-0.mp3": [("E", 0.0, 4.0), ("F", 4.0, 8.0)],
            "chunk-1.mp3": [("E", 0.0, 4.0)],
        }
    )
    given = []
    for name in ("A", "B", "C"):
        path = tmp_path / f"{name}.wav"
        path.write_bytes(b"voice")
        given.append(SpeakerReference(name=name, path=path))
    sampled: list[str] = []

    def sampler(path: Path, start: float, duration: float) -> Path:
        output = tmp_path / f"sample-{start:g}.mp3"
        output.write_bytes(b"voice")
        sampled.append(output.name)
        return output

    dispatcher = SequentialDispatcher(recognizer, retry=NO_WAIT, voice_sampler=sampler)
    dispatcher.dispatch(_segments(tmp_path, 2), get_profile("gpt-4o-transcribe-diarize"), speakers=given)

    requests = dict(recognizer.calls)
    assert requests["chunk-0.mp3"].speaker_names == ["A", "B", "C"]
    assert requests["chunk-1.mp3"].speaker_names == ["A", "B", "C", "E"]
    assert sampled == ["sample-0.mp3"]
