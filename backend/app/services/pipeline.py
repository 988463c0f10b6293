"""End-to-end audio job execution pipeline."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

import structlog
from sqlalchemy.orm import Session, sessionmaker

from app.core.constants import TRANSCRIBE_PROGRESS_START, ChunkStatus, JobStatus, QualityStatus, StepName
from app.core.errors import InsufficientSuccessRateError, PipelineError, StaleAttemptError
from app.core.settings import Settings, get_settings
from app.db.session import SessionLocal, session_scope
from app.schemas.job import QueueSubmission
from app.services import repository, steps
from app.services.heartbeat import HeartbeatManager, HeartbeatTicker
from app.services.media import convert_to_mp3, needs_conversion
from app.services.persister import RecordFields, RecordPersister
from app.services.remote_clients import AnalysisServiceClient
from app.services.splitter import AudioChunk, AudioSplitter, cleanup_chunk_files
from app.services.transcriber import (
    ChunkTranscriber,
    QualityReport,
    assess_quality,
    chunk_progress,
    merge_results,
)
from app.services.workflow import WorkflowExecutor, WorkflowOutputs

logger = structlog.get_logger(__name__)

SUPERSEDED = "superseded"


@dataclass
class JobOutcome:
    job_id: int
    status: str
    attempts: int = 0
    retryable: bool = False
    record_id: Optional[int] = None
    quality_status: Optional[str] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None


@dataclass
class _RunContext:
    submission: QueueSubmission
    attempt: int
    audio_path: Path
    chunks: list[AudioChunk] = field(default_factory=list)
    transcript: str = ""
    record_id: Optional[int] = None

    @property
    def job_id(self) -> int:
        return self.submission.job_id


def completion_message(quality: QualityReport) -> str:
    if quality.quality_status == QualityStatus.PARTIAL:
        return f"Completed (some chunks failed: success rate {quality.success_rate * 100:.1f}%)"
    return "Completed"


class AudioJobOrchestrator:
    """Drives one claimed job through convert, split, transcribe, analyse, persist and cleanup.

    Every write carries the attempt number returned by the claim. If the reaper
    hands the job to a newer claim while this run is still going, the next write
    raises ``StaleAttemptError`` and the run stops without touching the job again.
    """

    def __init__(
        self,
        *,
        heartbeat: HeartbeatManager,
        splitter: AudioSplitter,
        transcriber: ChunkTranscriber,
        workflow: WorkflowExecutor,
        persister: RecordPersister,
        session_factory: sessionmaker = SessionLocal,
        min_success_rate: float = 0.8,
        converter: Callable[[Path], Path] = convert_to_mp3,
    ) -> None:
        self.heartbeat = heartbeat
        self.splitter = splitter
        self.transcriber = transcriber
        self.workflow = workflow
        self.persister = persister
        self.session_factory = session_factory
        self.min_success_rate = min_success_rate
        self.converter = converter

    def run(self, submission: QueueSubmission) -> JobOutcome:
        job_id = submission.job_id
        claim = self.heartbeat.start(job_id)
        if not claim.ok:
            logger.info("job_not_claimed", job_id=job_id, reason=claim.reason)
            return JobOutcome(job_id=job_id, status="skipped", attempts=claim.attempts, error=claim.reason)

        ctx = _RunContext(submission=submission, attempt=claim.attempts, audio_path=Path(submission.input_path))
        current: Optional[StepName] = None
        with self.heartbeat.keepalive(job_id, ctx.attempt) as ticker:
            try:
                with self._owned(ctx) as db:
                    steps.reset_steps(db, job_id)
                current = StepName.CONVERT
                self._convert(ctx)
                current = StepName.SPLIT
                self._split(ctx)
                current = StepName.TRANSCRIBE
                quality = self._transcribe(ctx)
                current = StepName.EXTERNAL_WORKFLOW
                outputs = self._analyse(ctx)
                current = StepName.PERSIST
                self._persist(ctx, quality, outputs)
                current = StepName.CLEANUP
                self._cleanup(ctx)
                return self._complete(ctx, ticker, quality)
            except StaleAttemptError as exc:
                return self._abandon(ctx, ticker, exc)
            except Exception as exc:
                return self._fail(ctx, ticker, current, exc)

    @contextmanager
    def _owned(self, ctx: _RunContext) -> Iterator[Session]:
        """Session whose writes commit only while this run's claim still owns the job."""
        with session_scope(self.session_factory) as db:
            repository.fence_attempt(db, ctx.job_id, ctx.attempt)
            yield db

    def _update(self, ctx: _RunContext, progress: Optional[int], label: str) -> None:
        with session_scope(self.session_factory) as db:
            repository.update_progress(db, ctx.job_id, attempt=ctx.attempt, progress=progress, step=label)

    def _begin(self, ctx: _RunContext, step: StepName, progress: Optional[int], label: str) -> None:
        with session_scope(self.session_factory) as db:
            repository.update_progress(db, ctx.job_id, attempt=ctx.attempt, progress=progress, step=label)
            steps.start_step(db, ctx.job_id, step)

    def _tick(self, ctx: _RunContext) -> None:
        if not self.heartbeat.tick(ctx.job_id, ctx.attempt):
            raise StaleAttemptError(ctx.job_id, ctx.attempt)

    def _finish_step(self, ctx: _RunContext, step: StepName, metadata: dict[str, object]) -> None:
        with self._owned(ctx) as db:
            steps.complete_step(db, ctx.job_id, step, metadata)
        self._tick(ctx)

    def _convert(self, ctx: _RunContext) -> None:
        self._update(ctx, 5, "Converting audio")
        if not ctx.audio_path.exists():
            raise PipelineError(f"input file not found: {ctx.audio_path}")
        if not needs_conversion(ctx.audio_path):
            with self._owned(ctx) as db:
                steps.skip_step(db, ctx.job_id, StepName.CONVERT, "Audio already in target format")
            self._tick(ctx)
            return

        with self._owned(ctx) as db:
            steps.start_step(db, ctx.job_id, StepName.CONVERT)
        ctx.audio_path = self.converter(ctx.audio_path)
        self._finish_step(ctx, StepName.CONVERT, {"converted": True, "output_path": str(ctx.audio_path)})

    def _split(self, ctx: _RunContext) -> None:
        self._begin(ctx, StepName.SPLIT, 10, "Splitting audio")
        ctx.chunks = self.splitter.split(ctx.job_id, ctx.audio_path)
        with session_scope(self.session_factory) as db:
            repository.register_chunks(db, ctx.job_id, ctx.chunks, attempt=ctx.attempt)
        self._finish_step(ctx, StepName.SPLIT, {"chunk_count": len(ctx.chunks)})

    def _transcribe(self, ctx: _RunContext) -> QualityReport:
        def on_status(
            job_id: int,
            chunk_index: int,
            status: ChunkStatus,
            transcript: Optional[str],
            error: Optional[str],
        ) -> None:
            with session_scope(self.session_factory) as db:
                repository.update_chunk_status(
                    db, job_id, chunk_index, status, transcript=transcript, error=error, attempt=ctx.attempt
                )

        def on_progress(job_id: int, completed: int, total: int) -> None:
            self._update(ctx, chunk_progress(completed, total), f"Transcribing ({completed}/{total})")

        self._begin(ctx, StepName.TRANSCRIBE, TRANSCRIBE_PROGRESS_START, "Transcribing")
        results = self.transcriber.process_all(ctx.job_id, ctx.chunks, on_status, on_progress)
        quality = assess_quality(results, len(ctx.chunks), self.min_success_rate)
        if not quality.meets_threshold:
            raise InsufficientSuccessRateError(quality.success_rate, self.min_success_rate)
        ctx.transcript = merge_results(results)
        self._finish_step(
            ctx,
            StepName.TRANSCRIBE,
            {
                "total_chunks": quality.total_chunks,
                "success_count": quality.success_count,
                "failed_count": quality.failed_count,
                "success_rate": round(quality.success_rate * 100, 1),
            },
        )
        return quality

    def _analyse(self, ctx: _RunContext) -> WorkflowOutputs:
        self._begin(ctx, StepName.EXTERNAL_WORKFLOW, 85, "Running analysis workflow")
        outputs = self.workflow.run(ctx.job_id, ctx.transcript, ctx.submission.parameters)
        self._finish_step(
            ctx,
            StepName.EXTERNAL_WORKFLOW,
            {
                "fields_present": [name for name, value in outputs.fields.items() if value],
                "work_items": len(outputs.work_items),
            },
        )
        return outputs

    def _persist(self, ctx: _RunContext, quality: QualityReport, outputs: WorkflowOutputs) -> None:
        self._begin(ctx, StepName.PERSIST, 95, "Saving record")
        submission = ctx.submission
        result = self.persister.persist(
            ctx.job_id,
            RecordFields(
                transcript=ctx.transcript,
                outputs=outputs.fields,
                work_items=outputs.work_items,
                quality_status=quality.quality_status,
                success_rate=quality.success_rate,
                warnings=quality.warnings,
                file_id=submission.file_id,
                user_id=submission.user_id,
                company_id=submission.company_id,
                staff_id=submission.staff_id,
                audio_path=str(ctx.audio_path),
            ),
            attempt=ctx.attempt,
        )
        ctx.record_id = result.record_id
        self._finish_step(ctx, StepName.PERSIST, {"record_id": result.record_id, "created": result.created})

    def _cleanup(self, ctx: _RunContext) -> None:
        self._begin(ctx, StepName.CLEANUP, None, "Cleaning up")
        removed = cleanup_chunk_files(ctx.job_id, ctx.chunks, ctx.audio_path)
        self._finish_step(ctx, StepName.CLEANUP, {"removed_files": removed})

    def _complete(self, ctx: _RunContext, ticker: HeartbeatTicker, quality: QualityReport) -> JobOutcome:
        job_id = ctx.job_id
        self.heartbeat.stop(job_id, ticker)
        with session_scope(self.session_factory) as db:
            repository.update_progress(db, job_id, attempt=ctx.attempt, step=completion_message(quality))
            repository.finish_job(
                db,
                job_id,
                JobStatus.COMPLETED,
                attempt=ctx.attempt,
                quality_status=quality.quality_status.value,
            )
        logger.info(
            "job_completed",
            job_id=job_id,
            record_id=ctx.record_id,
            quality_status=quality.quality_status.value,
            success_rate=round(quality.success_rate * 100, 1),
        )
        return JobOutcome(
            job_id=job_id,
            status=JobStatus.COMPLETED.value,
            attempts=ctx.attempt,
            record_id=ctx.record_id,
            quality_status=quality.quality_status.value,
        )

    def _abandon(self, ctx: _RunContext, ticker: HeartbeatTicker, exc: StaleAttemptError) -> JobOutcome:
        self.heartbeat.stop(ctx.job_id, ticker)
        logger.warning("job_attempt_superseded", job_id=ctx.job_id, attempt=ctx.attempt)
        return JobOutcome(job_id=ctx.job_id, status=SUPERSEDED, attempts=ctx.attempt, error=str(exc))

    def _fail(
        self,
        ctx: _RunContext,
        ticker: HeartbeatTicker,
        step: Optional[StepName],
        exc: Exception,
    ) -> JobOutcome:
        job_id = ctx.job_id
        message = str(exc) or exc.__class__.__name__
        step_name = step.value if step is not None else "claim"
        logger.error("job_failed", job_id=job_id, step=step_name, error=message)
        self.heartbeat.stop(job_id, ticker)
        try:
            with self._owned(ctx) as db:
                if step is not None:
                    steps.fail_step(db, job_id, step, message)
                repository.update_progress(db, job_id, attempt=ctx.attempt, step=f"Failed: {step_name}")
                job = repository.finish_job(
                    db,
                    job_id,
                    JobStatus.FAILED,
                    attempt=ctx.attempt,
                    error=f"{step_name}: {message}",
                    failed_step=step_name,
                )
                attempts, retryable = job.attempts, job.attempts < job.max_attempts
        except StaleAttemptError as stale:
            return self._abandon(ctx, ticker, stale)
        return JobOutcome(
            job_id=job_id,
            status=JobStatus.FAILED.value,
            attempts=attempts,
            retryable=retryable,
            failed_step=step_name,
            error=message,
        )


def build_orchestrator(
    settings: Optional[Settings] = None,
    *,
    session_factory: sessionmaker = SessionLocal,
    client: Optional[AnalysisServiceClient] = None,
) -> AudioJobOrchestrator:
    settings = settings or get_settings()
    client = client or AnalysisServiceClient.from_settings(settings)
    return AudioJobOrchestrator(
        heartbeat=HeartbeatManager.from_settings(settings, session_factory),
        splitter=AudioSplitter.from_settings(settings),
        transcriber=ChunkTranscriber.from_settings(settings, client),
        workflow=WorkflowExecutor.from_settings(settings, client),
        persister=RecordPersister(session_factory),
        session_factory=session_factory,
        min_success_rate=settings.min_chunk_success_rate,
    )


def execute_job(submission: QueueSubmission) -> JobOutcome:
    return build_orchestrator().run(submission)
