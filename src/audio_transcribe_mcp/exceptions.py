from __future__ import annotations


class TranscriptionError(RuntimeError):
    """Base class for failures that end a transcription job with a readable message."""


class InvalidInputError(TranscriptionError):
    """Raised when the submitted audio path or options are unusable."""


class ToolUnavailableError(TranscriptionError):
    """Raised when the media engine is required but could not be located."""


class ConversionError(TranscriptionError):
    """Raised when an ffmpeg/ffprobe invocation fails."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Audio {operation} failed: {detail}")


class FileTooLargeError(TranscriptionError):
    """Raised when a file exceeds the API limit and cannot be split."""

    def __init__(self, size_mb: float, limit_mb: float) -> None:
        self.size_mb = size_mb
        self.limit_mb = limit_mb
        super().__init__(
            f"File size is {size_mb:.1f}MB, which exceeds the {limit_mb:g}MB API limit.\n\n"
            "Large file support requires FFmpeg, which could not be found on this system.\n\n"
            f"Please use a file smaller than {limit_mb:g}MB, or install FFmpeg."
        )


class PlanningError(TranscriptionError):
    """Raised when a split plan cannot be computed."""


class RecognitionError(TranscriptionError):
    """Raised for a single failed recognition call. Retried by the dispatcher."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class JobCancelledError(TranscriptionError):
    """Raised when the caller cancels a running job."""

    def __init__(self) -> None:
        super().__init__("Transcription cancelled")
