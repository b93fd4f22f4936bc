from pathlib import Path
from threading import Event

from audio_transcribe_mcp.jobs import JobsRegistry
from audio_transcribe_mcp.progress import ProgressStream
from audio_transcribe_mcp.types import TranscriptionJob, TranscriptionOutcome
from audio_transcribe_mcp.worker import BackgroundWorker


class FakePipeline:
    def __init__(self, outcome: TranscriptionOutcome, cancel_on_run: bool = False) -> None:
        self.outcome = outcome
        self.cancel_on_run = cancel_on_run
        self.jobs: list[TranscriptionJob] = []

    def run(
        self,
        job: TranscriptionJob,
        progress: ProgressStream | None = None,
        cancel_event: Event | None = None,
    ) -> TranscriptionOutcome:
        self.jobs.append(job)
        if progress is not None:
            progress.emit("transcribing", "Transcribing chunk 1 of 2...", current=1, total=2, attempt=1)
        if self.cancel_on_run and cancel_event is not None:
            cancel_event.set()
        return self.outcome


class ExplodingPipeline:
    def run(self, *_: object, **__: object) -> TranscriptionOutcome:
        raise RuntimeError("worker exploded")


def _claimed_job(jobs: JobsRegistry, tmp_path: Path) -> str:
    job = jobs.enqueue(TranscriptionJob(source_path=tmp_path / "talk.mp3"))
    claimed = jobs.claim_next()
    assert claimed is not None and claimed["id"] == job["id"]
    assert claimed["status"] == "running"
    return str(job["id"])


def test_worker_processes_job(tmp_path: Path) -> None:
    jobs = JobsRegistry()
    outcome = TranscriptionOutcome(success=True, text="hello world", transcript="WEBVTT\n\nhello world")
    pipeline = FakePipeline(outcome)
    worker = BackgroundWorker(jobs=jobs, pipeline=pipeline, poll_interval_seconds=5)  # type: ignore[arg-type]

    job_id = _claimed_job(jobs, tmp_path)
    worker._process_job(job_id)

    status = jobs.get(job_id)
    assert status is not None
    assert status["status"] == "completed"
    assert status["result"]["text"] == "hello world"
    assert status["progress"] == {
        "stage": "transcribing",
        "message": "Transcribing chunk 1 of 2...",
        "current": 1,
        "total": 2,
        "attempt": 1,
    }
    assert pipeline.jobs[0].source_path == tmp_path / "talk.mp3"


def test_worker_records_pipeline_failure(tmp_path: Path) -> None:
    jobs = JobsRegistry()
    pipeline = FakePipeline(TranscriptionOutcome.failure("File does not exist: /x.mp3"))
    worker = BackgroundWorker(jobs=jobs, pipeline=pipeline, poll_interval_seconds=5)  # type: ignore[arg-type]

    job_id = _claimed_job(jobs, tmp_path)
    worker._process_job(job_id)

    status = jobs.get(job_id)
    assert status is not None
    assert status["status"] == "failed"
    assert status["error"] == "File does not exist: /x.mp3"
    assert status["result"] is None


def test_worker_marks_cancelled_jobs(tmp_path: Path) -> None:
    jobs = JobsRegistry()
    pipeline = FakePipeline(TranscriptionOutcome.failure("Transcription cancelled"), cancel_on_run=True)
    worker = BackgroundWorker(jobs=jobs, pipeline=pipeline, poll_interval_seconds=5)  # type: ignore[arg-type]

    job_id = _claimed_job(jobs, tmp_path)
    worker._process_job(job_id)

    status = jobs.get(job_id)
    assert status is not None
    assert status["status"] == "cancelled"


def test_worker_loop_survives_unexpected_errors(tmp_path: Path) -> None:
    jobs = JobsRegistry()
    worker = BackgroundWorker(jobs=jobs, pipeline=ExplodingPipeline(), poll_interval_seconds=1)  # type: ignore[arg-type]
    job = jobs.enqueue(TranscriptionJob(source_path=tmp_path / "talk.mp3"))

    worker.start()
    try:
        for _ in range(200):
            status = jobs.get(str(job["id"]))
            if status is not None and status["status"] == "failed":
                break
            Event().wait(0.01)
    finally:
        worker.stop()

    status = jobs.get(str(job["id"]))
    assert status is not None
    assert status["status"] == "failed"
    assert status["error"] == "worker exploded"
    assert worker.is_running is False
