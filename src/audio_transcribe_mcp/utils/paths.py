from __future__ import annotations

from pathlib import Path

from audio_transcribe_mcp.exceptions import InvalidInputError

ALLOWED_EXTENSIONS = (
    ".mp3",
    ".wav",
    ".m4a",
    ".webm",
    ".mp4",
    ".mpeg",
    ".mpga",
    ".ogg",
    ".flac",
    ".aac",
)

_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".mpeg": "audio/mpeg",
    ".mpga": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
}


def audio_mime_type(path: Path) -> str:
    return _MIME_TYPES.get(path.suffix.lower(), "audio/mpeg")


def validate_audio_path(raw: str | Path) -> Path:
    """Resolve ``raw`` to an absolute path of a readable, non-empty audio file."""
    value = str(raw) if raw is not None else ""
    if not value.strip():
        raise InvalidInputError("Invalid file path: path must be a non-empty string")
    if "\0" in value:
        raise InvalidInputError("Invalid file path: contains null bytes")

    path = Path(value).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path

    suffix = path.suffix.lower()
    if suffix not in ALLOWED_EXTENSIONS:
        raise InvalidInputError(
            f"Invalid file extension: {suffix or '(none)'}. Allowed: {', '.join(ALLOWED_EXTENSIONS)}"
        )
    if path.is_symlink():
        raise InvalidInputError("Path is a symbolic link (not allowed)")
    if not path.exists():
        raise InvalidInputError(f"File does not exist: {path}")
    if not path.is_file():
        raise InvalidInputError("Path does not point to a regular file")
    if path.stat().st_size == 0:
        raise InvalidInputError(f"Input file is empty (0 bytes): {path}")
    return path.resolve()
