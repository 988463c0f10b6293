"""Chunk-level speech-to-text with bounded fan-out and a quality gate."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

import structlog

from app.core.constants import (
    TRANSCRIBE_PROGRESS_SPAN,
    TRANSCRIBE_PROGRESS_START,
    ChunkStatus,
    ErrorCode,
    QualityStatus,
)
from app.core.settings import Settings
from app.services.remote_clients import AnalysisServiceClient
from app.services.retry import RetryPolicy, call_with_retry, classify_failure, is_retryable
from app.services.splitter import AudioChunk

logger = structlog.get_logger(__name__)

# (job_id, chunk_index, status, transcript, error)
StatusCallback = Callable[[int, int, ChunkStatus, Optional[str], Optional[str]], None]
# (job_id, completed, total)
ProgressCallback = Callable[[int, int, int], None]


@dataclass
class ChunkResult:
    index: int
    text: str
    success: bool
    error: Optional[str] = None


@dataclass
class QualityReport:
    total_chunks: int
    success_count: int
    success_rate: float
    quality_status: QualityStatus
    meets_threshold: bool
    warnings: list[dict[str, object]] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return self.total_chunks - self.success_count


def chunk_progress(completed: int, total: int) -> int:
    """Map chunk completion onto the 10-80 slice of overall job progress."""
    if total <= 0:
        return TRANSCRIBE_PROGRESS_START
    return TRANSCRIBE_PROGRESS_START + int(completed / total * TRANSCRIBE_PROGRESS_SPAN)


def assess_quality(results: Sequence[ChunkResult], total_chunks: int, min_success_rate: float) -> QualityReport:
    successful = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    success_rate = len(successful) / total_chunks if total_chunks > 0 else 0.0
    warnings: list[dict[str, object]] = [
        {
            "code": ErrorCode.CHUNK_PROCESS_FAILED.value,
            "chunk_index": r.index,
            "error": r.error or "Unknown error",
        }
        for r in sorted(failed, key=lambda r: r.index)
    ]
    # Chunks that never produced a result count against quality too.
    missing = total_chunks - len(results)
    return QualityReport(
        total_chunks=total_chunks,
        success_count=len(successful),
        success_rate=success_rate,
        quality_status=QualityStatus.PARTIAL if failed or missing > 0 else QualityStatus.COMPLETE,
        meets_threshold=success_rate >= min_success_rate,
        warnings=warnings,
    )


def merge_results(results: Sequence[ChunkResult]) -> str:
    ordered = sorted((r for r in results if r.success), key=lambda r: r.index)
    return "\n".join(r.text for r in ordered)


class ChunkTranscriber:
    def __init__(
        self,
        client: AnalysisServiceClient,
        *,
        upload_api_key: str,
        transcription_api_key: str,
        policy: Optional[RetryPolicy] = None,
        concurrency: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.upload_api_key = upload_api_key
        self.transcription_api_key = transcription_api_key
        self.policy = policy or RetryPolicy()
        self.concurrency = max(1, concurrency)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[AnalysisServiceClient] = None) -> "ChunkTranscriber":
        return cls(
            client or AnalysisServiceClient.from_settings(settings),
            upload_api_key=settings.upload_api_key,
            transcription_api_key=settings.transcription_api_key,
            policy=RetryPolicy.from_settings(settings),
            concurrency=settings.chunk_concurrency,
        )

    def upload_and_transcribe(self, job_id: int, path: Union[str, Path]) -> str:
        chunk_path = Path(path)
        file_id = call_with_retry(
            lambda: self.client.upload_file(chunk_path, api_key=self.upload_api_key, file_type="audio"),
            policy=self.policy,
            operation="chunk_upload",
            sleep=self._sleep,
            job_id=job_id,
        )
        return call_with_retry(
            lambda: self.client.transcribe(file_id, api_key=self.transcription_api_key),
            policy=self.policy,
            operation="chunk_transcription",
            sleep=self._sleep,
            job_id=job_id,
        )

    def process_with_retry(self, job_id: int, chunk: AudioChunk, status_callback: StatusCallback) -> ChunkResult:
        """Process one chunk; a chunk that exhausts its attempts is reported, never raised."""
        attempt = 1
        while True:
            status_callback(job_id, chunk.index, ChunkStatus.PROCESSING, None, None)
            try:
                text = self.upload_and_transcribe(job_id, chunk.path)
            except Exception as exc:
                error = str(exc)
                if attempt >= self.policy.max_attempts or not is_retryable(classify_failure(exc)):
                    logger.warning("chunk_failed", job_id=job_id, chunk_index=chunk.index, error=error)
                    status_callback(job_id, chunk.index, ChunkStatus.FAILED, None, error)
                    return ChunkResult(index=chunk.index, text="", success=False, error=error)
                logger.warning("chunk_retry", job_id=job_id, chunk_index=chunk.index, attempt=attempt, error=error)
                self._sleep(self.policy.delay_for(attempt + 1))
                attempt += 1
                continue

            status_callback(job_id, chunk.index, ChunkStatus.COMPLETED, text, None)
            return ChunkResult(index=chunk.index, text=text, success=True)

    def process_all(
        self,
        job_id: int,
        chunks: Sequence[AudioChunk],
        status_callback: StatusCallback,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> list[ChunkResult]:
        """Transcribe every chunk with at most ``concurrency`` in flight; results come back in index order."""
        total = len(chunks)
        if total == 0:
            return []

        logger.info("chunk_processing_started", job_id=job_id, total_chunks=total, concurrency=self.concurrency)
        results: list[ChunkResult] = []
        completed = 0
        with ThreadPoolExecutor(
            max_workers=min(self.concurrency, total),
            thread_name_prefix=f"job-{job_id}-chunk",
        ) as pool:
            futures = [pool.submit(self.process_with_retry, job_id, chunk, status_callback) for chunk in chunks]
            try:
                for future in as_completed(futures):
                    results.append(future.result())
                    completed += 1
                    if progress_callback is not None:
                        progress_callback(job_id, completed, total)
            except Exception:
                # A callback gave up on the job; do not start the chunks still queued.
                for future in futures:
                    future.cancel()
                raise

        results.sort(key=lambda r: r.index)
        failed = [r.index for r in results if not r.success]
        logger.info(
            "chunk_processing_completed",
            job_id=job_id,
            total_chunks=total,
            success_count=total - len(failed),
            failed_indices=failed,
        )
        return results
