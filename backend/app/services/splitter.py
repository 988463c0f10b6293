"""Split long recordings into transcribable chunks.

Split points are chosen at the middle of detected silences, bounded by a soft
and a hard duration cap plus an estimated byte-size cap. When no usable
silence exists the file is cut at fixed intervals, and when the audio tooling
fails altogether the file is sliced into fixed-size byte ranges.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Sequence, Union

import structlog

from app.core.settings import Settings
from app.services.media import (
    MediaError,
    SilenceEvent,
    extract_segment,
    iter_silence_events,
    probe_duration,
)

logger = structlog.get_logger(__name__)

ProbeFn = Callable[[Path], float]
DetectFn = Callable[[Path, float, float], Iterable[SilenceEvent]]
CutFn = Callable[[Path, Path, float, Optional[float]], Path]


@dataclass(frozen=True)
class SilenceInterval:
    start: float
    end: float

    @property
    def midpoint(self) -> float:
        return (self.start + self.end) / 2


class SilenceCollector:
    """Pairs start/end events into intervals; unmatched events are dropped."""

    def __init__(self) -> None:
        self._open_start: Optional[float] = None
        self.intervals: list[SilenceInterval] = []

    def feed(self, event: SilenceEvent) -> Optional[SilenceInterval]:
        if event.kind == "start":
            self._open_start = event.at
            return None
        if event.kind == "end" and self._open_start is not None:
            interval = SilenceInterval(start=self._open_start, end=max(event.at, self._open_start))
            self._open_start = None
            self.intervals.append(interval)
            return interval
        return None

    @classmethod
    def collect(cls, events: Iterable[SilenceEvent]) -> list[SilenceInterval]:
        collector = cls()
        for event in events:
            collector.feed(event)
        return collector.intervals


@dataclass(frozen=True)
class SplitLimits:
    soft_duration_s: float = 180.0
    hard_duration_s: float = 210.0
    max_chunk_bytes: int = 10 * 1024 * 1024
    size_trigger_ratio: float = 0.8
    tail_guard_s: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SplitLimits":
        return cls(
            soft_duration_s=settings.chunk_soft_duration_s,
            hard_duration_s=settings.chunk_hard_duration_s,
            max_chunk_bytes=settings.max_chunk_bytes,
        )


@dataclass
class AudioChunk:
    index: int
    path: str
    start: Optional[float]
    end: Optional[float]

    @property
    def duration(self) -> Optional[float]:
        if self.start is None or self.end is None:
            return None
        return self.end - self.start


def plan_fixed_interval_points(
    duration: float,
    interval: float,
    *,
    start: float = 0.0,
    tail_guard_s: float = 5.0,
) -> list[float]:
    points: list[float] = []
    current = start + interval
    while current < duration - tail_guard_s:
        points.append(current)
        current += interval
    return points


def plan_silence_split_points(
    duration: float,
    size_bytes: int,
    silences: Sequence[SilenceInterval],
    limits: SplitLimits,
) -> list[float]:
    """Choose split points among silence midpoints.

    The bytes-per-second rate is an average over the whole file, so the size
    trigger is only an estimate for variable-bitrate audio.
    """
    if not silences or duration <= 0:
        return []

    bytes_per_second = size_bytes / duration
    size_trigger = limits.max_chunk_bytes * limits.size_trigger_ratio
    points: list[float] = []
    last_split = 0.0

    for position, silence in enumerate(silences):
        since_last = silence.midpoint - last_split
        if since_last <= 0:
            continue
        if since_last >= limits.soft_duration_s or since_last * bytes_per_second >= size_trigger:
            points.append(silence.midpoint)
            last_split = silence.midpoint
            continue

        is_last = position == len(silences) - 1
        if is_last or silences[position + 1].midpoint - last_split > limits.hard_duration_s:
            if since_last > limits.soft_duration_s * 0.5:
                points.append(silence.midpoint)
                last_split = silence.midpoint

    if duration - last_split > limits.hard_duration_s:
        points.extend(
            plan_fixed_interval_points(
                duration,
                limits.soft_duration_s,
                start=last_split,
                tail_guard_s=limits.tail_guard_s,
            )
        )

    while points and duration - points[-1] < limits.tail_guard_s:
        points.pop()
    return points


def plan_split_points(
    duration: float,
    size_bytes: int,
    silences: Sequence[SilenceInterval],
    limits: SplitLimits,
) -> tuple[list[float], str]:
    points = plan_silence_split_points(duration, size_bytes, silences, limits)
    if points:
        return points, "silence"
    if duration > limits.soft_duration_s:
        return (
            plan_fixed_interval_points(duration, limits.soft_duration_s, tail_guard_s=limits.tail_guard_s),
            "fixed_interval",
        )
    return [], "single"


def chunk_path_for(source: Path, index: int) -> Path:
    return source.with_name(f"{source.stem}_chunk_{index}{source.suffix}")


def _iter_byte_slices(path: Path, chunk_bytes: int) -> Iterator[bytes]:
    with path.open("rb") as handle:
        while True:
            data = handle.read(chunk_bytes)
            if not data:
                return
            yield data


def split_binary(job_id: int, path: Union[str, Path], chunk_bytes: int) -> list[AudioChunk]:
    """Slice the file into fixed-size byte ranges without regard for audio frames."""
    source = Path(path)
    chunks: list[AudioChunk] = []
    for index, data in enumerate(_iter_byte_slices(source, chunk_bytes)):
        target = chunk_path_for(source, index)
        target.write_bytes(data)
        chunks.append(AudioChunk(index=index, path=str(target), start=None, end=None))
    logger.info("binary_split_completed", job_id=job_id, chunk_count=len(chunks))
    return chunks


def cleanup_chunk_files(job_id: int, chunks: Iterable[AudioChunk], original_path: Union[str, Path]) -> int:
    original = Path(original_path)
    removed = 0
    for chunk in chunks:
        target = Path(chunk.path)
        if target == original or not target.exists():
            continue
        try:
            target.unlink()
            removed += 1
        except OSError as exc:
            logger.warning("chunk_cleanup_failed", job_id=job_id, path=str(target), error=str(exc))
    logger.debug("chunk_cleanup_completed", job_id=job_id, removed=removed)
    return removed


class AudioSplitter:
    def __init__(
        self,
        limits: Optional[SplitLimits] = None,
        *,
        noise_db: float = -40.0,
        min_silence_s: float = 0.5,
        fallback_chunk_bytes: int = 4 * 1024 * 1024,
        probe: ProbeFn = probe_duration,
        detect: DetectFn = iter_silence_events,
        cut: CutFn = extract_segment,
    ) -> None:
        self.limits = limits or SplitLimits()
        self.noise_db = noise_db
        self.min_silence_s = min_silence_s
        self.fallback_chunk_bytes = fallback_chunk_bytes
        self._probe = probe
        self._detect = detect
        self._cut = cut

    @classmethod
    def from_settings(cls, settings: Settings) -> "AudioSplitter":
        return cls(
            SplitLimits.from_settings(settings),
            noise_db=settings.silence_threshold_db,
            min_silence_s=settings.silence_min_duration_s,
            fallback_chunk_bytes=settings.fallback_chunk_bytes,
        )

    def detect_silences(self, job_id: int, path: Path) -> list[SilenceInterval]:
        try:
            return SilenceCollector.collect(self._detect(path, self.noise_db, self.min_silence_s))
        except (MediaError, OSError) as exc:
            logger.warning("silence_detection_failed", job_id=job_id, error=str(exc))
            return []

    def split(self, job_id: int, path: Union[str, Path]) -> list[AudioChunk]:
        """Never raises for tooling failures; degrades down to byte slicing."""
        source = Path(path)
        try:
            duration = self._probe(source)
            silences = self.detect_silences(job_id, source)
            points, method = plan_split_points(duration, source.stat().st_size, silences, self.limits)
            if not points:
                logger.info("split_not_needed", job_id=job_id, duration=duration)
                return [AudioChunk(index=0, path=str(source), start=0.0, end=duration)]
            chunks = self._cut_at_points(source, points)
        except Exception as exc:
            logger.error("split_failed_using_binary_fallback", job_id=job_id, error=str(exc))
            return split_binary(job_id, source, self.fallback_chunk_bytes)

        logger.info(
            "split_completed",
            job_id=job_id,
            method=method,
            chunk_count=len(chunks),
            silence_count=len(silences),
        )
        return chunks

    def _cut_at_points(self, source: Path, points: Sequence[float]) -> list[AudioChunk]:
        bounds: list[tuple[float, Optional[float]]] = []
        start = 0.0
        for point in points:
            bounds.append((start, point))
            start = point
        bounds.append((start, None))

        chunks: list[AudioChunk] = []
        for index, (chunk_start, chunk_end) in enumerate(bounds):
            target = chunk_path_for(source, index)
            self._cut(source, target, chunk_start, chunk_end)
            chunks.append(AudioChunk(index=index, path=str(target), start=chunk_start, end=chunk_end))
        return chunks
