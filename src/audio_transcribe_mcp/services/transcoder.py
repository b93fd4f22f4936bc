from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import uuid
from pathlib import Path
from typing import Sequence

from audio_transcribe_mcp.exceptions import ConversionError, ToolUnavailableError

logger = logging.getLogger(__name__)

# Containers the recognition API does not accept as uploaded.
TRANSCODE_EXTENSIONS = frozenset({".webm", ".aac"})

_MAX_ATEMPO = 2.0

VOICE_SAMPLE_MIN_SECONDS = 2.0
VOICE_SAMPLE_MAX_SECONDS = 10.0


def _resolve_executable(path: str | None, default: str) -> str | None:
    if path:
        return path
    return shutil.which(default)


def _atempo_chain(multiplier: float) -> str:
    """Build an atempo filter chain; each stage is kept within ffmpeg's classic 2x bound."""
    stages: list[str] = []
    remaining = multiplier
    while remaining > _MAX_ATEMPO:
        stages.append(f"atempo={_MAX_ATEMPO}")
        remaining /= _MAX_ATEMPO
    stages.append(f"atempo={remaining:.6g}")
    return ",".join(stages)


class MediaTranscoder:
    """Thin wrapper around the ffmpeg/ffprobe invocations the pipeline needs.

    Every operation writes a new file and never touches its input. Failures
    are deterministic, so they surface as :class:`ConversionError` and are not
    retried.
    """

    def __init__(
        self,
        ffmpeg_executable: str | None = None,
        ffprobe_executable: str | None = None,
        temp_dir: Path | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._ffmpeg = _resolve_executable(ffmpeg_executable, "ffmpeg")
        self._ffprobe = _resolve_executable(ffprobe_executable, "ffprobe")
        self.temp_dir = temp_dir or Path(tempfile.gettempdir())
        self.timeout_seconds = timeout_seconds

    @property
    def available(self) -> bool:
        return self._ffmpeg is not None and self._ffprobe is not None

    @staticmethod
    def needs_transcode(path: Path) -> bool:
        return path.suffix.lower() in TRANSCODE_EXTENSIONS

    def _require(self, executable: str | None, name: str) -> str:
        if not executable:
            raise ToolUnavailableError(f"{name} executable not found in PATH")
        return executable

    def _output(self, output_path: Path | None, stem: str, suffix: str) -> Path:
        if output_path is None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            output_path = self.temp_dir / f"{stem}-{uuid.uuid4().hex[:12]}{suffix}"
        output_path.parent.mkdir(parents=True, exist_ok=True)
        return output_path

    def _run(self, operation: str, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        logger.debug("Running %s command: %s", operation, " ".join(args))
        try:
            completed = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise ToolUnavailableError(f"{args[0]} could not be executed: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ConversionError(operation, f"timed out after {exc.timeout}s") from exc

        if completed.returncode != 0:
            stderr = completed.stderr.strip()[-400:] or f"exited with code {completed.returncode}"
            logger.error("%s failed: %s", operation, stderr)
            raise ConversionError(operation, stderr)
        return completed

    def _ffmpeg_to(self, operation: str, args: Sequence[str], output_path: Path) -> Path:
        ffmpeg = self._require(self._ffmpeg, "ffmpeg")
        self._run(operation, [ffmpeg, "-hide_banner", "-loglevel", "error", "-y", *args, str(output_path)])
        if not output_path.exists():
            raise ConversionError(operation, f"ffmpeg did not produce {output_path}")
        return output_path

    def probe_duration(self, path: Path) -> float:
        ffprobe = self._require(self._ffprobe, "ffprobe")
        completed = self._run(
            "probe",
            [
                ffprobe,
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                str(path),
            ],
        )
        raw = completed.stdout.strip()
        try:
            duration = float(raw)
        except ValueError as exc:
            raise ConversionError("probe", f"unrecognised duration {raw!r} for {path.name}") from exc
        if duration < 0:
            raise ConversionError("probe", f"negative duration {duration} for {path.name}")
        return duration

    def transcode(self, path: Path, output_path: Path | None = None) -> Path:
        if path.stat().st_size == 0:
            raise ConversionError("conversion", f"Input file is empty (0 bytes): {path}")
        output = self._output(output_path, "converted", ".mp3")
        logger.info("Converting %s to MP3", path.suffix or path.name)
        return self._ffmpeg_to(
            "conversion",
            ["-i", str(path), "-vn", "-acodec", "libmp3lame", "-b:a", "128k", "-ar", "44100"],
            output,
        )

    def cut_segment(
        self,
        path: Path,
        start_seconds: float,
        duration_seconds: float,
        output_path: Path | None = None,
    ) -> Path:
        output = self._output(output_path, "chunk", ".mp3")
        return self._ffmpeg_to(
            "split",
            [
                "-ss",
                f"{start_seconds:.3f}",
                "-t",
                f"{duration_seconds:.3f}",
                "-i",
                str(path),
                "-vn",
                "-acodec",
                "libmp3lame",
                "-b:a",
                "96k",
            ],
            output,
        )

    def extract_voice_sample(
        self,
        path: Path,
        start_seconds: float,
        duration_seconds: float,
        output_path: Path | None = None,
    ) -> Path:
        """Cut a short speaker clip for use as a known-speaker reference."""
        duration = min(max(duration_seconds, VOICE_SAMPLE_MIN_SECONDS), VOICE_SAMPLE_MAX_SECONDS)
        output = self._output(output_path, "voice-sample", ".mp3")
        return self._ffmpeg_to(
            "voice sample extraction",
            [
                "-ss",
                f"{max(start_seconds, 0.0):.3f}",
                "-t",
                f"{duration:.3f}",
                "-i",
                str(path),
                "-vn",
                "-acodec",
                "libmp3lame",
                "-b:a",
                "128k",
            ],
            output,
        )

    def adjust_speed(self, path: Path, multiplier: float, output_path: Path | None = None) -> Path:
        output = self._output(output_path, "optimized", ".mp3")
        logger.info("Optimizing audio speed: %sx", multiplier)
        return self._ffmpeg_to(
            "speed adjustment",
            ["-i", str(path), "-vn", "-filter:a", _atempo_chain(multiplier), "-acodec", "libmp3lame", "-b:a", "128k"],
            output,
        )

    def compress(self, path: Path, output_path: Path | None = None) -> Path:
        output = self._output(output_path, "compressed", ".ogg")
        self._ffmpeg_to(
            "compression",
            ["-i", str(path), "-vn", "-ac", "1", "-acodec", "libopus", "-b:a", "16k", "-application", "voip"],
            output,
        )
        original_size = path.stat().st_size
        if original_size:
            reduction = (1 - output.stat().st_size / original_size) * 100
            logger.info("Audio compressed: %.1f%% size reduction", reduction)
        return output
