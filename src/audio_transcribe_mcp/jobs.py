from __future__ import annotations

import uuid
from collections import deque
from dataclasses import asdict
from datetime import datetime, timezone
from threading import Event, Lock
from typing import Any

from audio_transcribe_mcp.types import JobStatus, ProgressEvent, TranscriptionJob

FINAL_STATUSES: tuple[JobStatus, ...] = ("completed", "failed", "cancelled")
DEFAULT_MAX_FINISHED_JOBS = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class JobsRegistry:
    """In-memory job table shared by the MCP tools and the background worker.

    Only the most recent ``max_finished_jobs`` finished records are kept.
    """

    def __init__(self, max_finished_jobs: int = DEFAULT_MAX_FINISHED_JOBS) -> None:
        self.max_finished_jobs = max_finished_jobs
        self._lock = Lock()
        self._records: dict[str, dict[str, Any]] = {}
        self._submissions: dict[str, TranscriptionJob] = {}
        self._cancel_events: dict[str, Event] = {}
        self._finished: deque[str] = deque()

    def enqueue(self, job: TranscriptionJob) -> dict[str, Any]:
        job_id = str(uuid.uuid4())
        with self._lock:
            self._submissions[job_id] = job
            self._cancel_events[job_id] = Event()
            self._records[job_id] = {
                "id": job_id,
                "source_path": str(job.source_path),
                "model": job.model,
                "strategy": job.strategy,
                "status": "queued",
                "created_at": _now(),
                "started_at": None,
                "completed_at": None,
                "progress": None,
                "result": None,
                "error": None,
                "poll_count": 0,
            }
        job_record = self.get(job_id)
        if job_record is None:
            raise RuntimeError("Failed to create job")
        return job_record

    def get(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(job_id)
            return dict(record) if record is not None else None

    def submission(self, job_id: str) -> TranscriptionJob:
        with self._lock:
            return self._submissions[job_id]

    def cancel_event(self, job_id: str) -> Event:
        with self._lock:
            return self._cancel_events[job_id]

    def claim_next(self) -> dict[str, Any] | None:
        with self._lock:
            for record in self._records.values():
                if record["status"] == "queued":
                    record["status"] = "running"
                    record["started_at"] = _now()
                    return dict(record)
        return None

    def record_progress(self, job_id: str, event: ProgressEvent) -> None:
        with self._lock:
            record = self._records.get(job_id)
            if record is not None:
                record["progress"] = {key: value for key, value in asdict(event).items() if value is not None}

    def mark_completed(self, job_id: str, result: dict[str, object]) -> None:
        self._finish(job_id, "completed", result=result, error=None)

    def mark_failed(self, job_id: str, error: str) -> None:
        self._finish(job_id, "failed", result=None, error=error)

    def mark_cancelled(self, job_id: str) -> None:
        self._finish(job_id, "cancelled", result=None, error="Transcription cancelled")

    def _finish(self, job_id: str, status: JobStatus, *, result: dict[str, object] | None, error: str | None) -> None:
        with self._lock:
            record = self._records[job_id]
            record["status"] = status
            record["completed_at"] = _now()
            record["result"] = result
            record["error"] = error
            self._submissions.pop(job_id, None)
            self._cancel_events.pop(job_id, None)
            self._finished.append(job_id)
            while len(self._finished) > self.max_finished_jobs:
                self._records.pop(self._finished.popleft(), None)

    def request_cancel(self, job_id: str) -> bool:
        """Flag a job for cancellation. Queued jobs are cancelled immediately."""
        with self._lock:
            record = self._records.get(job_id)
            if record is None or record["status"] in FINAL_STATUSES:
                return False
            self._cancel_events[job_id].set()
            queued = record["status"] == "queued"
        if queued:
            self.mark_cancelled(job_id)
        return True

    def increment_poll_count(self, job_id: str) -> int:
        """Increment poll_count and return the new value."""
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                return 0
            record["poll_count"] += 1
            return int(record["poll_count"])
