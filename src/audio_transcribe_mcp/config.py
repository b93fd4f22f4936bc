from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from audio_transcribe_mcp.pipeline import PipelineOptions
from audio_transcribe_mcp.services.transcriber import DEFAULT_BASE_URL
from audio_transcribe_mcp.types import DispatchStrategy


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    mcp_path: str
    health_path: str
    poll_interval_seconds: int
    temp_dir: Path
    openai_api_key: str
    openai_base_url: str
    ffmpeg_path: str | None
    ffprobe_path: str | None
    max_concurrent_chunks: int
    max_retries: int
    initial_backoff_seconds: float
    request_timeout_seconds: float
    max_requests_per_minute: int
    chunk_ceiling_mb: float
    dispatch_strategy: DispatchStrategy
    max_finished_jobs: int
    log_level: str

    def pipeline_options(self) -> PipelineOptions:
        return PipelineOptions(
            ceiling_mb=self.chunk_ceiling_mb,
            max_workers=self.max_concurrent_chunks,
            max_retries=self.max_retries,
            initial_backoff_seconds=self.initial_backoff_seconds,
            max_requests_per_minute=self.max_requests_per_minute,
            temp_dir=self.temp_dir,
        )


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    return float(raw)


def _normalized_path(path: str) -> str:
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def _strategy(raw: str) -> DispatchStrategy:
    value = raw.strip().lower()
    if value == "sequential":
        return "sequential"
    if value == "parallel":
        return "parallel"
    raise RuntimeError(f"DISPATCH_STRATEGY must be 'parallel' or 'sequential', got {raw!r}")


def load_settings() -> Settings:
    load_dotenv()
    temp_dir = Path(os.getenv("TEMP_DIR", tempfile.gettempdir())).resolve()

    openai_api_key = os.getenv("OPENAI_API_KEY", "").strip()
    if not openai_api_key:
        raise RuntimeError("OPENAI_API_KEY is required")

    return Settings(
        host=os.getenv("HOST", "127.0.0.1"),
        port=_as_int("PORT", 3000),
        mcp_path=_normalized_path(os.getenv("MCP_PATH", "/mcp")),
        health_path=_normalized_path(os.getenv("HEALTH_PATH", "/healthz")),
        poll_interval_seconds=_as_int("POLL_INTERVAL_SECONDS", 2),
        temp_dir=temp_dir,
        openai_api_key=openai_api_key,
        openai_base_url=os.getenv("OPENAI_BASE_URL", DEFAULT_BASE_URL),
        ffmpeg_path=os.getenv("FFMPEG_PATH") or None,
        ffprobe_path=os.getenv("FFPROBE_PATH") or None,
        max_concurrent_chunks=_as_int("MAX_CONCURRENT_CHUNKS", 5),
        max_retries=_as_int("MAX_RETRIES", 3),
        initial_backoff_seconds=_as_float("INITIAL_BACKOFF_SECONDS", 1.0),
        request_timeout_seconds=_as_float("REQUEST_TIMEOUT_SECONDS", 300.0),
        max_requests_per_minute=_as_int("MAX_REQUESTS_PER_MINUTE", 80),
        chunk_ceiling_mb=_as_float("CHUNK_CEILING_MB", 20.0),
        dispatch_strategy=_strategy(os.getenv("DISPATCH_STRATEGY", "parallel")),
        max_finished_jobs=_as_int("MAX_FINISHED_JOBS", 500),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
