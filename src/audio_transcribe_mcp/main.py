from __future__ import annotations

import atexit
import logging

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from audio_transcribe_mcp.config import Settings, load_settings
from audio_transcribe_mcp.jobs import JobsRegistry
from audio_transcribe_mcp.mcp_tools import ToolRegistry
from audio_transcribe_mcp.pipeline import TranscriptionPipeline
from audio_transcribe_mcp.services.transcoder import MediaTranscoder
from audio_transcribe_mcp.services.transcriber import OpenAITranscriber
from audio_transcribe_mcp.worker import BackgroundWorker

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

logger = logging.getLogger(__name__)


class AppRuntime:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.jobs = JobsRegistry(max_finished_jobs=settings.max_finished_jobs)

        self.transcoder = MediaTranscoder(
            ffmpeg_executable=settings.ffmpeg_path,
            ffprobe_executable=settings.ffprobe_path,
            temp_dir=settings.temp_dir,
        )
        if not self.transcoder.available:
            logger.warning("FFmpeg/FFprobe not found: conversion and splitting of large files are disabled")

        self.transcriber = OpenAITranscriber(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.request_timeout_seconds,
        )
        self.pipeline = TranscriptionPipeline(
            transcoder=self.transcoder,
            recognizer=self.transcriber,
            options=settings.pipeline_options(),
        )

        self.worker = BackgroundWorker(
            jobs=self.jobs,
            pipeline=self.pipeline,
            poll_interval_seconds=settings.poll_interval_seconds,
        )

    def close(self) -> None:
        self.worker.stop()


def create_app(runtime: AppRuntime) -> FastMCP:
    mcp = FastMCP(name="audio-transcribe-mcp")

    tools = ToolRegistry(runtime.jobs, default_strategy=runtime.settings.dispatch_strategy)
    tools.register(mcp)

    @mcp.custom_route(runtime.settings.health_path, methods=["GET"])
    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "worker_running": runtime.worker.is_running,
                "ffmpeg_available": runtime.transcoder.available,
                "mcp_path": runtime.settings.mcp_path,
            }
        )

    return mcp


def cli() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    runtime = AppRuntime(settings)
    runtime.worker.start()
    atexit.register(runtime.close)

    app = create_app(runtime)
    logger.info("Starting MCP server on %s:%s%s", settings.host, settings.port, settings.mcp_path)
    app.run(
        transport="http",
        host=settings.host,
        port=settings.port,
        path=settings.mcp_path,
    )


if __name__ == "__main__":
    cli()
