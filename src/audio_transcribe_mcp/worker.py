from __future__ import annotations

import logging
from threading import Event, Thread

from audio_transcribe_mcp.jobs import JobsRegistry
from audio_transcribe_mcp.pipeline import TranscriptionPipeline
from audio_transcribe_mcp.progress import ProgressStream
from audio_transcribe_mcp.types import ProgressEvent

logger = logging.getLogger(__name__)


class BackgroundWorker:
    def __init__(
        self,
        *,
        jobs: JobsRegistry,
        pipeline: TranscriptionPipeline,
        poll_interval_seconds: int,
    ) -> None:
        self.jobs = jobs
        self.pipeline = pipeline
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_event = Event()
        self._thread = Thread(target=self._run_loop, name="audio-transcribe-worker", daemon=True)

    def start(self) -> None:
        if not self._thread.is_alive():
            self._thread.start()

    def stop(self, timeout_seconds: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout_seconds)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive() and not self._stop_event.is_set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            job = self.jobs.claim_next()
            if job is None:
                self._stop_event.wait(self.poll_interval_seconds)
                continue

            job_id = str(job["id"])
            try:
                logger.info("Processing job %s", job_id)
                self._process_job(job_id)
            except Exception as exc:  # pylint: disable=broad-except
                message = str(exc).strip() or "Unknown worker error"
                logger.exception("Job %s failed: %s", job_id, message)
                self.jobs.mark_failed(job_id, message[:2000])

    def _process_job(self, job_id: str) -> None:
        submission = self.jobs.submission(job_id)
        cancel_event = self.jobs.cancel_event(job_id)

        progress = ProgressStream()

        def on_progress(event: ProgressEvent) -> None:
            self.jobs.record_progress(job_id, event)

        progress.subscribe(on_progress)

        outcome = self.pipeline.run(submission, progress=progress, cancel_event=cancel_event)

        if outcome.success:
            self.jobs.mark_completed(job_id, outcome.to_dict())
            logger.info("Completed job %s", job_id)
        elif cancel_event.is_set():
            self.jobs.mark_cancelled(job_id)
            logger.info("Cancelled job %s", job_id)
        else:
            self.jobs.mark_failed(job_id, outcome.error or "Transcription failed")
