from __future__ import annotations

import logging
import queue
from threading import Lock
from typing import Callable

from audio_transcribe_mcp.types import ProgressEvent, ProgressStage

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class ProgressStream:
    """Fan-out of pipeline progress events.

    Callers either subscribe a callback or pull queued events with
    :meth:`drain`. Events are informational only; a failing subscriber is
    logged and never interrupts the job.
    """

    def __init__(self) -> None:
        self._subscribers: list[ProgressCallback] = []
        self._lock = Lock()
        self._queue: queue.SimpleQueue[ProgressEvent] = queue.SimpleQueue()

    def subscribe(self, callback: ProgressCallback) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def emit(
        self,
        stage: ProgressStage,
        message: str,
        *,
        current: int | None = None,
        total: int | None = None,
        attempt: int | None = None,
    ) -> ProgressEvent:
        event = ProgressEvent(stage=stage, message=message, current=current, total=total, attempt=attempt)
        self._queue.put(event)
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Progress subscriber failed on %s event", stage)
        return event

    def drain(self) -> list[ProgressEvent]:
        events: list[ProgressEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events
