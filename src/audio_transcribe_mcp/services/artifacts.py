from __future__ import annotations

import logging
import shutil
import tempfile
import uuid
from pathlib import Path
from types import TracebackType

logger = logging.getLogger(__name__)


class ArtifactRegistry:
    """Owns every intermediate file a transcription job creates.

    Use as a context manager around the whole job. On exit all registered
    files are removed, then registered directories, then the job's own
    scratch directory. Removal is best-effort: failures are logged and the
    remaining artifacts are still removed.
    """

    def __init__(self, temp_root: Path | None = None, *, prefix: str = "transcribe-") -> None:
        self.temp_root = temp_root or Path(tempfile.gettempdir())
        self.prefix = prefix
        self._job_dir: Path | None = None
        self._files: list[Path] = []
        self._dirs: list[Path] = []

    def __enter__(self) -> ArtifactRegistry:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cleanup()

    @property
    def job_dir(self) -> Path:
        if self._job_dir is None:
            self.temp_root.mkdir(parents=True, exist_ok=True)
            self._job_dir = Path(tempfile.mkdtemp(prefix=self.prefix, dir=self.temp_root))
        return self._job_dir

    @property
    def paths(self) -> list[Path]:
        tracked = [*self._files, *self._dirs]
        if self._job_dir is not None:
            tracked.append(self._job_dir)
        return tracked

    def register(self, path: Path) -> Path:
        self._files.append(path)
        return path

    def register_dir(self, path: Path) -> Path:
        self._dirs.append(path)
        return path

    def allocate(self, stem: str, suffix: str, *, directory: Path | None = None) -> Path:
        """Reserve and register a unique output path for a tool to write into."""
        parent = directory or self.job_dir
        return self.register(parent / f"{stem}-{uuid.uuid4().hex[:12]}{suffix}")

    def make_dir(self, name: str) -> Path:
        path = self.job_dir / f"{name}-{uuid.uuid4().hex[:8]}"
        path.mkdir(parents=True, exist_ok=True)
        return self.register_dir(path)

    def cleanup(self) -> None:
        removed = 0
        for path in reversed(self._files):
            try:
                if path.exists():
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("Failed to remove temp file %s: %s", path, exc)

        directories = list(reversed(self._dirs))
        if self._job_dir is not None:
            directories.append(self._job_dir)
        for directory in directories:
            if not directory.exists():
                continue
            try:
                shutil.rmtree(directory)
            except OSError as exc:
                logger.warning("Failed to remove temp directory %s: %s", directory, exc)

        logger.debug("Removed %d temp files and %d directories", removed, len(directories))
        self._files.clear()
        self._dirs.clear()
        self._job_dir = None
