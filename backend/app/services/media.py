"""Audio processing helpers powered by ffmpeg/ffprobe."""

from __future__ import annotations

import json
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from app.core.constants import CONVERTIBLE_AUDIO_SUFFIXES, TARGET_AUDIO_SUFFIX


class MediaError(RuntimeError):
    pass


@dataclass(frozen=True)
class SilenceEvent:
    """A single silence boundary reported by the detector, in seconds."""

    kind: str  # "start" or "end"
    at: float


@dataclass
class AudioMeta:
    duration: float
    size_bytes: int
    codec: Optional[str]
    bit_rate: Optional[int]


_SILENCE_START_RE = re.compile(r"silence_start:\s*(-?[\d.]+)")
_SILENCE_END_RE = re.compile(r"silence_end:\s*(-?[\d.]+)")


def _run(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(cmd, capture_output=True, text=True)
    if proc.returncode != 0:
        raise MediaError(f"Command failed: {' '.join(cmd)}\n{proc.stderr.strip()}")
    return proc


def ffmpeg_available() -> bool:
    try:
        _run(["ffmpeg", "-version"])
        return True
    except (MediaError, OSError):
        return False


def ffprobe_available() -> bool:
    try:
        _run(["ffprobe", "-version"])
        return True
    except (MediaError, OSError):
        return False


def probe_audio(path: Path) -> AudioMeta:
    proc = _run(
        [
            "ffprobe",
            "-v",
            "error",
            "-show_streams",
            "-show_format",
            "-of",
            "json",
            str(path),
        ]
    )
    payload = json.loads(proc.stdout)
    streams = payload.get("streams", [])
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if not audio_stream:
        raise MediaError("No audio stream found")

    fmt = payload.get("format", {})
    duration = fmt.get("duration") or audio_stream.get("duration") or 0
    bit_rate = fmt.get("bit_rate") or audio_stream.get("bit_rate")
    return AudioMeta(
        duration=float(duration),
        size_bytes=int(fmt.get("size") or path.stat().st_size),
        codec=audio_stream.get("codec_name"),
        bit_rate=int(bit_rate) if bit_rate else None,
    )


def probe_duration(path: Path) -> float:
    duration = probe_audio(path).duration
    if duration <= 0:
        raise MediaError(f"Could not determine duration of {path.name}")
    return duration


def needs_conversion(path: Path) -> bool:
    suffix = path.suffix.lower()
    if suffix == TARGET_AUDIO_SUFFIX:
        return False
    return suffix in CONVERTIBLE_AUDIO_SUFFIXES


def convert_to_mp3(source: Path, output: Optional[Path] = None, bitrate: str = "128k") -> Path:
    output = output or source.with_suffix(TARGET_AUDIO_SUFFIX)
    output.parent.mkdir(parents=True, exist_ok=True)
    _run(
        [
            "ffmpeg",
            "-y",
            "-i",
            str(source),
            "-vn",
            "-c:a",
            "libmp3lame",
            "-b:a",
            bitrate,
            str(output),
        ]
    )
    return output


def parse_silence_line(line: str) -> Optional[SilenceEvent]:
    """Turn one line of silencedetect output into an event, if it carries one."""
    match = _SILENCE_START_RE.search(line)
    if match:
        return SilenceEvent(kind="start", at=max(0.0, float(match.group(1))))
    match = _SILENCE_END_RE.search(line)
    if match:
        return SilenceEvent(kind="end", at=float(match.group(1)))
    return None


def iter_silence_events(path: Path, noise_db: float, min_duration_s: float) -> Iterator[SilenceEvent]:
    """Stream silence events from ffmpeg's silencedetect filter as they are printed."""
    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-nostats",
        "-i",
        str(path),
        "-af",
        f"silencedetect=noise={noise_db}dB:d={min_duration_s}",
        "-f",
        "null",
        "-",
    ]
    proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
    assert proc.stderr is not None
    tail: list[str] = []
    try:
        for line in proc.stderr:
            event = parse_silence_line(line)
            if event is not None:
                yield event
            else:
                tail = (tail + [line.rstrip()])[-20:]
    finally:
        proc.stderr.close()
        returncode = proc.wait()
    if returncode != 0:
        raise MediaError(f"Command failed: {' '.join(cmd)}\n" + "\n".join(tail))


def extract_segment(source: Path, output: Path, start: float, end: Optional[float]) -> Path:
    output.parent.mkdir(parents=True, exist_ok=True)
    cmd = ["ffmpeg", "-y", "-i", str(source), "-ss", f"{start:.3f}"]
    if end is not None:
        cmd += ["-t", f"{max(0.0, end - start):.3f}"]
    cmd += ["-c", "copy", str(output)]
    _run(cmd)
    return output
