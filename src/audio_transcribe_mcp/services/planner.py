from __future__ import annotations

import math
from dataclasses import dataclass

from audio_transcribe_mcp.exceptions import PlanningError

BYTES_PER_MB = 1024 * 1024
API_LIMIT_MB = 25.0
DEFAULT_CEILING_MB = 20.0
MAX_SEGMENT_SECONDS = 1200
MIN_TAIL_SECONDS = 1.0


@dataclass(slots=True, frozen=True)
class SegmentWindow:
    index: int
    start: float
    duration: float


@dataclass(slots=True, frozen=True)
class ChunkPlan:
    total_duration: float
    segment_duration: int
    segment_count: int

    def windows(self) -> list[SegmentWindow]:
        """Time windows to cut, the last one running to the end of the audio."""
        windows: list[SegmentWindow] = []
        for index in range(self.segment_count):
            start = float(index * self.segment_duration)
            if index == self.segment_count - 1:
                duration = self.total_duration - start
            else:
                duration = float(self.segment_duration)
            windows.append(SegmentWindow(index=index, start=start, duration=duration))
        return windows


class ChunkPlanner:
    """Decides whether a file fits in one request and how to split it if not.

    The split assumes a roughly constant bitrate, so individual segments may
    land slightly above or below the ceiling.
    """

    def __init__(
        self,
        ceiling_mb: float = DEFAULT_CEILING_MB,
        limit_mb: float = API_LIMIT_MB,
        max_segment_seconds: int = MAX_SEGMENT_SECONDS,
    ) -> None:
        if ceiling_mb <= 0 or ceiling_mb > limit_mb:
            raise ValueError(f"Chunk ceiling must be in (0, {limit_mb}] MB, got {ceiling_mb}")
        self.ceiling_mb = ceiling_mb
        self.limit_mb = limit_mb
        self.max_segment_seconds = max_segment_seconds

    @staticmethod
    def size_mb(size_bytes: int) -> float:
        return size_bytes / BYTES_PER_MB

    def needs_split(self, size_bytes: int) -> bool:
        return self.size_mb(size_bytes) > self.limit_mb

    def plan(self, size_bytes: int, duration_seconds: float) -> ChunkPlan:
        size_mb = self.size_mb(size_bytes)
        if not self.needs_split(size_bytes):
            return ChunkPlan(
                total_duration=duration_seconds,
                segment_duration=math.ceil(duration_seconds),
                segment_count=1,
            )

        if math.isnan(duration_seconds) or duration_seconds <= 0:
            raise PlanningError(f"Cannot split audio with unknown duration ({duration_seconds!r}s)")

        by_size = math.floor(duration_seconds * self.ceiling_mb / size_mb)
        segment_duration = min(by_size, self.max_segment_seconds)
        if segment_duration <= 0:
            raise PlanningError(
                f"Cannot split {size_mb:.1f}MB of {duration_seconds:.1f}s audio into "
                f"{self.ceiling_mb:g}MB segments: estimated bitrate is too high"
            )

        segment_count = math.ceil(duration_seconds / segment_duration)
        # a sub-second remainder rides along with the previous segment
        tail = duration_seconds - (segment_count - 1) * segment_duration
        if segment_count > 1 and tail < MIN_TAIL_SECONDS:
            segment_count -= 1
        return ChunkPlan(
            total_duration=duration_seconds,
            segment_duration=segment_duration,
            segment_count=segment_count,
        )
