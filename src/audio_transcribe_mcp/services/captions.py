"""Caption (WebVTT) codec for transcripts.

Every backend response shape is normalised into a :class:`Transcript` of
cues. Cue timestamps coming back from the API are relative to the segment
that was uploaded, so combining segments means shifting each segment's cues
by the summed duration of the segments before it.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping, Sequence

from audio_transcribe_mcp.types import CAPTION_HEADER, Cue, Transcript

TIMING_SEPARATOR = "-->"
UNKNOWN_SPEAKER = "Unknown"

_TIMESTAMP_RE = re.compile(r"^(?:(\d+):)?(\d{1,2}):(\d{2})[.,](\d{3})$")
_SPEAKER_LINE_RE = re.compile(r"^\[([^\]]+)\]\s*(.*)$")


def _check_seconds(value: float, name: str) -> float:
    seconds = float(value)
    if math.isnan(seconds) or seconds < 0:
        raise ValueError(f"{name} must be a non-negative number, got {value!r}")
    return seconds


def _as_seconds(value: object) -> float:
    try:
        seconds = float(str(value)) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(seconds):
        return 0.0
    return max(seconds, 0.0)


def parse_timestamp(value: str) -> float:
    """Parse ``HH:MM:SS.mmm`` (hours optional, ``,`` accepted) into seconds."""
    match = _TIMESTAMP_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid caption timestamp: {value!r}")
    hours, minutes, seconds, millis = match.groups()
    return int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds) + int(millis) / 1000


def format_timestamp(seconds: float) -> str:
    total_ms = int(round(_check_seconds(seconds, "timestamp") * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def segment_offsets(durations: Sequence[float]) -> list[float]:
    """Return the start offset of every segment given all segment durations."""
    offsets: list[float] = []
    running = 0.0
    for index, duration in enumerate(durations):
        offsets.append(running)
        running += _check_seconds(duration, f"duration of segment {index}")
    return offsets


def _is_timing_line(line: str) -> bool:
    return TIMING_SEPARATOR in line


def parse_captions(text: str) -> list[Cue]:
    """Parse caption text into cues.

    Header lines and any text outside a cue are ignored. A line directly
    followed by a timing line is treated as the cue identifier.
    """
    lines = text.splitlines()
    cues: list[Cue] = []
    current: Cue | None = None
    body: list[str] = []

    def close() -> None:
        nonlocal current, body
        if current is not None:
            current.text = "\n".join(body)
            cues.append(current)
        current = None
        body = []

    for index, raw in enumerate(lines):
        line = raw.strip()
        if _is_timing_line(line):
            close()
            start_text, end_text = line.split(TIMING_SEPARATOR, 1)
            # cue settings may follow the end timestamp
            end_token = end_text.strip().split(" ", 1)[0]
            current = Cue(start=parse_timestamp(start_text), end=parse_timestamp(end_token), text="")
            continue
        if not line:
            close()
            continue
        next_line = lines[index + 1].strip() if index + 1 < len(lines) else ""
        if current is None or _is_timing_line(next_line):
            continue
        body.append(line)

    close()
    return cues


def render(transcript: Transcript) -> str:
    parts = [f"{transcript.header}\n\n"]
    if transcript.body is not None:
        parts.append(transcript.body)
        return "".join(parts)

    for number, cue in enumerate(transcript.cues, start=1):
        parts.append(
            f"{number}\n{format_timestamp(cue.start)} {TIMING_SEPARATOR} {format_timestamp(cue.end)}\n"
            f"{cue.text}\n\n"
        )
    return "".join(parts)


def shift_cues(cues: Iterable[Cue], offset: float) -> list[Cue]:
    offset = _check_seconds(offset, "offset")
    return [Cue(start=cue.start + offset, end=cue.end + offset, text=cue.text) for cue in cues]


def combine_caption_segments(
    segments: Sequence[str | None],
    durations: Sequence[float],
) -> Transcript:
    """Merge per-segment caption documents into one, renumbering cues.

    ``None`` marks a segment without a result; it contributes no cues but its
    duration still advances the offset of later segments.
    """
    if len(segments) != len(durations):
        raise ValueError(
            f"Got {len(segments)} caption segments but {len(durations)} durations"
        )

    cues: list[Cue] = []
    for text, offset in zip(segments, segment_offsets(durations)):
        if not text:
            continue
        cues.extend(shift_cues(parse_captions(text), offset))
    return Transcript(cues=cues)


def json_to_captions(payload: Mapping[str, object] | None, duration: float | None = None) -> Transcript:
    """Wrap flat ``{"text": ...}`` output.

    With a known ``duration`` the text becomes one container cue; otherwise it
    is emitted untimed under the header.
    """
    text = str((payload or {}).get("text") or "").strip()
    if duration is None:
        return Transcript(body=text)
    if not text:
        return Transcript()
    return Transcript(cues=[Cue(start=0.0, end=_check_seconds(duration, "duration"), text=text)])


def combine_text_segments(
    payloads: Sequence[Mapping[str, object] | None],
    durations: Sequence[float],
) -> Transcript:
    if len(payloads) != len(durations):
        raise ValueError(f"Got {len(payloads)} text segments but {len(durations)} durations")
    total = sum(_check_seconds(value, "duration") for value in durations)
    texts = [str((payload or {}).get("text") or "").strip() for payload in payloads]
    return json_to_captions({"text": " ".join(text for text in texts if text)}, duration=total)


def _diarized_cues(payload: Mapping[str, object] | None, offset: float = 0.0) -> list[Cue]:
    segments = (payload or {}).get("segments")
    if not isinstance(segments, list):
        return []

    cues: list[Cue] = []
    for item in segments:
        if not isinstance(item, Mapping):
            continue
        speaker = str(item.get("speaker") or "").strip() or UNKNOWN_SPEAKER
        text = str(item.get("text") or "").strip()
        cues.append(
            Cue(
                start=_as_seconds(item.get("start")) + offset,
                end=_as_seconds(item.get("end")) + offset,
                text=f"[{speaker}] {text}",
            )
        )
    return cues


def diarized_json_to_captions(payload: Mapping[str, object] | None) -> Transcript:
    return Transcript(cues=_diarized_cues(payload), diarized=True)


def combine_diarized_segments(
    payloads: Sequence[Mapping[str, object] | None],
    durations: Sequence[float],
) -> Transcript:
    if len(payloads) != len(durations):
        raise ValueError(f"Got {len(payloads)} diarized segments but {len(durations)} durations")

    cues: list[Cue] = []
    for payload, offset in zip(payloads, segment_offsets(durations)):
        cues.extend(_diarized_cues(payload, offset))
    return Transcript(cues=cues, diarized=True)


def scale_transcript(transcript: Transcript, factor: float) -> Transcript:
    """Stretch cue timings by ``factor``, e.g. to undo a playback speed-up."""
    factor = _check_seconds(factor, "factor")
    return Transcript(
        cues=[Cue(start=cue.start * factor, end=cue.end * factor, text=cue.text) for cue in transcript.cues],
        diarized=transcript.diarized,
        body=transcript.body,
        header=transcript.header,
    )


def _is_caption_markup(line: str) -> bool:
    return line.startswith(CAPTION_HEADER) or _is_timing_line(line) or line.isdigit()


def to_plain_text(value: str | Transcript) -> str:
    """Strip header, cue-number and timing lines, keeping spoken lines in order."""
    text = render(value) if isinstance(value, Transcript) else value
    if not text:
        return ""
    lines = (line.strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line and not _is_caption_markup(line)).strip()


def group_by_speaker(text: str) -> str:
    """Collapse ``[Speaker] text`` lines into one paragraph per speaker turn."""
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    if not any(_SPEAKER_LINE_RE.match(line) for line in lines):
        return text.strip()

    paragraphs: list[str] = []
    speaker: str | None = None
    words: list[str] = []
    for line in lines:
        match = _SPEAKER_LINE_RE.match(line)
        if not match:
            continue
        name, spoken = match.groups()
        if speaker is not None and name != speaker:
            paragraphs.append(f"{speaker}:\n{' '.join(words).strip()}")
            words = []
        speaker = name
        if spoken.strip():
            words.append(spoken.strip())

    if speaker is not None and words:
        paragraphs.append(f"{speaker}:\n{' '.join(words).strip()}")
    return "\n\n".join(paragraphs)
