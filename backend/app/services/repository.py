"""Persistence helpers for jobs and their chunks.

Every status transition that can race another process (claim, retry, reaper
timeout and requeue) is a single conditional ``UPDATE``; the affected row
count decides who won.

Writes made on behalf of a running pipeline pass the ``attempt`` returned by
``claim_job``. That number is the fencing token: once the reaper or a manual
retry hands the job to a newer claim, writes from the older one match no row
and raise ``StaleAttemptError``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol, Union

import structlog
from sqlalchemy import case, delete, insert, select, update
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.constants import (
    CLAIMABLE_STATES,
    DEFAULT_JOB_TYPE,
    STEP_DESCRIPTIONS,
    TERMINAL_STATES,
    CallerRole,
    ChunkStatus,
    JobStatus,
    TimeoutReason,
)
from app.core.errors import JobNotFoundError, StaleAttemptError
from app.models.job import Job, JobChunk, JobStep
from app.schemas.job import CallerScope, JobChunkOut, JobOut, JobStepOut, QueueSubmission

logger = structlog.get_logger(__name__)

REQUEUED_STEP_LABEL = "retry pending (recovered from timeout)"
RETRY_STEP_LABEL = "retry pending"

_DESCRIPTIONS_BY_NAME = {step.value: text for step, text in STEP_DESCRIPTIONS.items()}


class ChunkLike(Protocol):
    index: int
    path: str
    start: Optional[float]
    end: Optional[float]


@dataclass(frozen=True)
class ClaimResult:
    ok: bool
    attempts: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class StalledJob:
    job_id: int
    attempts: int
    max_attempts: int
    reason: TimeoutReason
    heartbeat_at: Optional[datetime] = None


def _json_load(value: Optional[str], default: object) -> object:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _status_value(status: Union[JobStatus, ChunkStatus, str]) -> str:
    return status.value if isinstance(status, (JobStatus, ChunkStatus)) else status


def _claimable_values() -> list[str]:
    return [state.value for state in CLAIMABLE_STATES]


def to_step_out(step: JobStep) -> JobStepOut:
    metadata = _json_load(step.metadata_json, {})
    return JobStepOut(
        step_name=step.step_name,
        step_order=step.step_order,
        description=_DESCRIPTIONS_BY_NAME.get(step.step_name, ""),
        status=step.status,
        started_at=step.started_at,
        completed_at=step.completed_at,
        duration_ms=step.duration_ms,
        error_message=step.error_message,
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def to_chunk_out(chunk: JobChunk) -> JobChunkOut:
    return JobChunkOut(
        chunk_index=chunk.chunk_index,
        status=chunk.status,
        start_time=chunk.start_time,
        end_time=chunk.end_time,
        retry_count=chunk.retry_count,
        error_message=chunk.error_message,
        has_transcript=chunk.transcript is not None,
    )


def to_job_out(job: Job, *, include_steps: bool = True) -> JobOut:
    return JobOut(
        id=job.id,
        file_id=job.file_id,
        user_id=job.user_id,
        company_id=job.company_id,
        staff_id=job.staff_id,
        input_filename=job.input_filename,
        job_type=job.job_type,
        status=job.status,
        progress=job.progress,
        current_step=job.current_step,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        started_at=job.started_at,
        heartbeat_at=job.heartbeat_at,
        timeout_at=job.timeout_at,
        timeout_reason=job.timeout_reason,
        completed_at=job.completed_at,
        error_message=job.error_message,
        failed_step=job.failed_step,
        total_chunks=job.total_chunks,
        completed_chunks=job.completed_chunks,
        quality_status=job.quality_status,
        record_id=job.record_id,
        created_at=job.created_at,
        updated_at=job.updated_at,
        steps=[to_step_out(step) for step in job.steps] if include_steps else [],
    )


def job_parameters(job: Job) -> dict[str, object]:
    params = _json_load(job.parameters_json, {})
    return params if isinstance(params, dict) else {}


def submission_for(job: Job) -> QueueSubmission:
    return QueueSubmission(
        job_id=job.id,
        input_path=job.input_path,
        file_id=job.file_id,
        user_id=job.user_id,
        company_id=job.company_id,
        staff_id=job.staff_id,
        job_type=job.job_type,
        parameters=job_parameters(job),
    )


def create_job(
    db: Session,
    *,
    input_path: str,
    input_filename: str = "",
    file_id: Optional[str] = None,
    user_id: Optional[int] = None,
    company_id: Optional[int] = None,
    staff_id: Optional[int] = None,
    job_type: str = DEFAULT_JOB_TYPE,
    parameters: Optional[dict[str, object]] = None,
    max_attempts: int = 3,
) -> Job:
    job = Job(
        file_id=file_id,
        user_id=user_id,
        company_id=company_id,
        staff_id=staff_id,
        input_filename=input_filename,
        input_path=input_path,
        job_type=job_type,
        parameters_json=json.dumps(parameters or {}, ensure_ascii=False),
        status=JobStatus.PENDING.value,
        progress=0,
        current_step="queued",
        attempts=0,
        max_attempts=max_attempts,
        timeout_reason=TimeoutReason.NONE.value,
    )
    db.add(job)
    db.flush()
    logger.info("job_created", job_id=job.id, user_id=user_id, company_id=company_id)
    return job


def _scoped(stmt, scope: Optional[CallerScope]):
    if scope is None or scope.role == CallerRole.ADMIN:
        return stmt
    if scope.role == CallerRole.COMPANY_ADMIN:
        return stmt.where(Job.company_id == scope.company_id)
    return stmt.where(Job.user_id == scope.user_id)


def get_job(db: Session, job_id: int, scope: Optional[CallerScope] = None) -> Optional[Job]:
    if scope is None:
        return db.get(Job, job_id)
    stmt = _scoped(select(Job).where(Job.id == job_id), scope)
    return db.scalars(stmt).first()


def require_job(db: Session, job_id: int, scope: Optional[CallerScope] = None) -> Job:
    job = get_job(db, job_id, scope)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def list_jobs(
    db: Session,
    scope: Optional[CallerScope] = None,
    *,
    status: Optional[Union[JobStatus, str]] = None,
    limit: int = 50,
) -> list[Job]:
    stmt = _scoped(select(Job), scope)
    if status is not None:
        stmt = stmt.where(Job.status == _status_value(status))
    stmt = stmt.order_by(Job.id.desc()).limit(limit)
    return list(db.scalars(stmt))


def claim_job(
    db: Session,
    job_id: int,
    *,
    max_duration_s: float,
    now: Optional[datetime] = None,
) -> ClaimResult:
    """Move a pending or failed job to processing if no one else has.

    Not-claimable jobs return ``ok=False``; a missing job raises
    ``JobNotFoundError``.
    """
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(
            Job.id == job_id,
            Job.status.in_(_claimable_values()),
            Job.attempts < Job.max_attempts,
        )
        .values(
            status=JobStatus.PROCESSING.value,
            attempts=Job.attempts + 1,
            started_at=now,
            heartbeat_at=now,
            timeout_at=now + timedelta(seconds=max_duration_s),
            timeout_reason=TimeoutReason.NONE.value,
            completed_at=None,
            error_message=None,
            failed_step=None,
            current_step="claimed",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    job = db.get(Job, job_id, populate_existing=True)
    if job is None:
        raise JobNotFoundError(job_id)
    if result.rowcount == 1:
        logger.info("job_claimed", job_id=job_id, attempts=job.attempts)
        return ClaimResult(ok=True, attempts=job.attempts)

    if job.status in _claimable_values():
        reason = f"attempts exhausted ({job.attempts}/{job.max_attempts})"
    else:
        reason = f"job is {job.status}"
    logger.info("job_claim_refused", job_id=job_id, reason=reason)
    return ClaimResult(ok=False, attempts=job.attempts, reason=reason)


def _owned_by(job_id: int, attempt: Optional[int]) -> list:
    conditions = [Job.id == job_id, Job.status == JobStatus.PROCESSING.value]
    if attempt is not None:
        conditions.append(Job.attempts == attempt)
    return conditions


def fence_attempt(db: Session, job_id: int, attempt: int, *, now: Optional[datetime] = None) -> None:
    """Check that ``attempt`` still owns the processing job.

    The check is an ``UPDATE`` so the job row stays locked until the caller's
    transaction ends; a concurrent claim cannot slip in between the check and
    the writes that follow it.
    """
    stmt = (
        update(Job)
        .where(*_owned_by(job_id, attempt))
        .values(updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        require_job(db, job_id)
        raise StaleAttemptError(job_id, attempt)


def update_progress(
    db: Session,
    job_id: int,
    *,
    attempt: Optional[int] = None,
    status: Optional[Union[JobStatus, str]] = None,
    progress: Optional[int] = None,
    step: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    values: dict[str, object] = {"updated_at": utcnow()}
    if status is not None:
        values["status"] = _status_value(status)
    if progress is not None:
        values["progress"] = max(0, min(100, int(progress)))
    if step is not None:
        values["current_step"] = step
    if error is not None:
        values["error_message"] = error
    conditions = _owned_by(job_id, attempt) if attempt is not None else [Job.id == job_id]
    stmt = update(Job).where(*conditions).values(**values).execution_options(synchronize_session=False)
    if db.execute(stmt).rowcount == 1:
        return
    require_job(db, job_id)
    raise StaleAttemptError(job_id, attempt)


def heartbeat(
    db: Session,
    job_id: int,
    *,
    attempt: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Refresh ``heartbeat_at`` while the job is processing under ``attempt``."""
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(*_owned_by(job_id, attempt))
        .values(heartbeat_at=now)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 1:
        return True
    require_job(db, job_id)
    return False


def finish_job(
    db: Session,
    job_id: int,
    status: Union[JobStatus, str],
    *,
    attempt: Optional[int] = None,
    timeout_reason: Optional[TimeoutReason] = None,
    error: Optional[str] = None,
    failed_step: Optional[str] = None,
    quality_status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """Move a processing job to ``status``.

    A job that is no longer processing, or that a newer claim owns, is
    returned unchanged.
    """
    now = now or utcnow()
    value = _status_value(status)
    values: dict[str, object] = {
        "status": value,
        "completed_at": now,
        "heartbeat_at": None,
        "timeout_at": None,
        "updated_at": now,
    }
    if timeout_reason is not None:
        values["timeout_reason"] = timeout_reason.value
    if error is not None:
        values["error_message"] = error
    if failed_step is not None:
        values["failed_step"] = failed_step
    if quality_status is not None:
        values["quality_status"] = quality_status
    if value == JobStatus.COMPLETED.value:
        values["progress"] = 100

    stmt = update(Job).where(*_owned_by(job_id, attempt)).values(**values).execution_options(synchronize_session=False)
    result = db.execute(stmt)
    job = db.get(Job, job_id, populate_existing=True)
    if job is None:
        raise JobNotFoundError(job_id)
    if result.rowcount != 1:
        logger.warning(
            "job_finish_ignored",
            job_id=job_id,
            attempt=attempt,
            current_attempt=job.attempts,
            current_status=job.status,
            requested=value,
        )
        return job
    logger.info("job_finished", job_id=job_id, status=value, failed_step=failed_step)
    return job


def set_record_id(db: Session, job_id: int, record_id: int, *, attempt: Optional[int] = None) -> Job:
    if attempt is not None:
        fence_attempt(db, job_id, attempt)
    job = require_job(db, job_id)
    job.record_id = record_id
    db.flush()
    return job


def register_chunks(
    db: Session,
    job_id: int,
    chunks: Iterable[ChunkLike],
    *,
    attempt: Optional[int] = None,
) -> int:
    """Replace the job's chunk rows with a fresh pending set in one bulk insert."""
    if attempt is not None:
        fence_attempt(db, job_id, attempt)
    job = require_job(db, job_id)
    rows = [
        {
            "job_id": job_id,
            "chunk_index": chunk.index,
            "file_path": str(chunk.path),
            "start_time": chunk.start,
            "end_time": chunk.end,
            "status": ChunkStatus.PENDING.value,
            "retry_count": 0,
        }
        for chunk in chunks
    ]
    db.execute(delete(JobChunk).where(JobChunk.job_id == job_id))
    if rows:
        db.execute(insert(JobChunk), rows)
    job.total_chunks = len(rows)
    job.completed_chunks = 0
    db.flush()
    return len(rows)


def list_chunks(db: Session, job_id: int) -> list[JobChunk]:
    stmt = select(JobChunk).where(JobChunk.job_id == job_id).order_by(JobChunk.chunk_index.asc())
    return list(db.scalars(stmt))


def update_chunk_status(
    db: Session,
    job_id: int,
    chunk_index: int,
    status: Union[ChunkStatus, str],
    *,
    transcript: Optional[str] = None,
    error: Optional[str] = None,
    attempt: Optional[int] = None,
) -> JobChunk:
    if attempt is not None:
        fence_attempt(db, job_id, attempt)
    stmt = select(JobChunk).where(JobChunk.job_id == job_id, JobChunk.chunk_index == chunk_index)
    chunk = db.scalars(stmt).first()
    if chunk is None:
        raise ValueError(f"chunk not found: job={job_id} index={chunk_index}")

    value = _status_value(status)
    if chunk.status == ChunkStatus.COMPLETED.value:
        # Completed chunks keep their transcript for the rest of the attempt.
        return chunk

    chunk.status = value
    if value == ChunkStatus.COMPLETED.value:
        if chunk.transcript is None:
            chunk.transcript = transcript or ""
        chunk.error_message = None
        db.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(completed_chunks=Job.completed_chunks + 1)
            .execution_options(synchronize_session=False)
        )
    elif value == ChunkStatus.FAILED.value:
        chunk.error_message = error
        chunk.retry_count = chunk.retry_count + 1
    db.flush()
    return chunk


def reset_chunks(db: Session, job_id: int, *, clear_retries: bool = True) -> int:
    values: dict[str, object] = {"status": ChunkStatus.PENDING.value, "error_message": None}
    if clear_retries:
        values["retry_count"] = 0
    result = db.execute(
        update(JobChunk)
        .where(JobChunk.job_id == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(completed_chunks=0)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def retry_job(db: Session, job_id: int, *, now: Optional[datetime] = None) -> bool:
    """Reset a failed job to pending. Returns False unless it was exactly ``failed``.

    ``attempts`` is preserved; when it has already reached ``max_attempts`` one
    more attempt is granted so the retried job can be claimed.
    """
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.FAILED.value)
        .values(
            status=JobStatus.PENDING.value,
            progress=0,
            current_step=RETRY_STEP_LABEL,
            error_message=None,
            failed_step=None,
            started_at=None,
            heartbeat_at=None,
            timeout_at=None,
            completed_at=None,
            timeout_reason=TimeoutReason.NONE.value,
            max_attempts=case(
                (Job.attempts >= Job.max_attempts, Job.attempts + 1),
                else_=Job.max_attempts,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        require_job(db, job_id)
        return False
    reset_chunks(db, job_id, clear_retries=True)
    db.flush()
    logger.info("job_retry_accepted", job_id=job_id)
    return True


def find_stalled_jobs(
    db: Session,
    *,
    heartbeat_timeout_s: float,
    now: Optional[datetime] = None,
) -> list[StalledJob]:
    now = now or utcnow()
    heartbeat_cutoff = now - timedelta(seconds=heartbeat_timeout_s)
    stmt = (
        select(Job)
        .where(
            Job.status == JobStatus.PROCESSING.value,
            (Job.heartbeat_at < heartbeat_cutoff) | (Job.timeout_at < now),
        )
        .order_by(Job.id.asc())
    )
    stalled: list[StalledJob] = []
    for job in db.scalars(stmt):
        if job.timeout_at is not None and job.timeout_at < now:
            reason = TimeoutReason.MAX_DURATION
        else:
            reason = TimeoutReason.HEARTBEAT_TIMEOUT
        stalled.append(
            StalledJob(
                job_id=job.id,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                reason=reason,
                heartbeat_at=job.heartbeat_at,
            )
        )
    return stalled


def mark_timed_out(
    db: Session,
    job_id: int,
    reason: TimeoutReason,
    message: str,
    *,
    now: Optional[datetime] = None,
) -> bool:
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
        .values(
            status=JobStatus.FAILED.value,
            timeout_reason=reason.value,
            error_message=message,
            completed_at=now,
            heartbeat_at=None,
            timeout_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def requeue_failed_job(db: Session, job_id: int, *, now: Optional[datetime] = None) -> bool:
    """Move a failed job with attempts left back to pending and reset its chunks."""
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.FAILED.value,
            Job.attempts < Job.max_attempts,
        )
        .values(
            status=JobStatus.PENDING.value,
            progress=0,
            current_step=REQUEUED_STEP_LABEL,
            timeout_reason=TimeoutReason.NONE.value,
            started_at=None,
            heartbeat_at=None,
            timeout_at=None,
            completed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        return False
    reset_chunks(db, job_id, clear_retries=False)
    return True


def list_pending_job_ids(db: Session) -> list[int]:
    stmt = select(Job.id).where(Job.status == JobStatus.PENDING.value).order_by(Job.id.asc())
    return list(db.scalars(stmt))


def cleanup_old_jobs(db: Session, *, days: int, now: Optional[datetime] = None) -> list[int]:
    """Delete terminal jobs (with their chunks and steps) finished more than ``days`` ago."""
    cutoff = (now or utcnow()) - timedelta(days=days)
    stmt = select(Job).where(
        Job.status.in_([state.value for state in TERMINAL_STATES]),
        Job.completed_at < cutoff,
    )
    removed: list[int] = []
    for job in db.scalars(stmt).all():
        removed.append(job.id)
        db.delete(job)
    db.flush()
    if removed:
        logger.info("old_jobs_cleaned", count=len(removed), days=days)
    return removed
