from __future__ import annotations

from datetime import datetime, timedelta

from app.core.constants import ChunkStatus, JobStatus, TimeoutReason
from app.db.session import session_scope
from app.schemas.job import QueueSubmission
from app.services import repository
from app.services.reaper import Reaper, timeout_message
from app.services.repository import StalledJob
from app.services.splitter import AudioChunk

NOW = datetime(2024, 5, 1, 12, 0, 0)


def _reaper(session_factory, submitted: list[QueueSubmission]) -> Reaper:
    return Reaper(submitted.append, session_factory, heartbeat_timeout_s=300, clock=lambda: NOW)


def _claim(session_factory, job_id: int, at: datetime, max_duration_s: float = 1800) -> None:
    with session_scope(session_factory) as db:
        assert repository.claim_job(db, job_id, max_duration_s=max_duration_s, now=at).ok


def test_silent_job_is_failed_and_requeued(session_factory, make_job) -> None:
    job_id = make_job(max_attempts=3)
    _claim(session_factory, job_id, NOW - timedelta(minutes=7))
    submitted: list[QueueSubmission] = []

    stats = _reaper(session_factory, submitted).sweep()

    assert (stats.processed, stats.requeued, stats.permanently_failed) == (1, 1, 0)
    assert [s.job_id for s in submitted] == [job_id]
    with session_scope(session_factory) as db:
        job = repository.require_job(db, job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 1
        assert job.current_step == repository.REQUEUED_STEP_LABEL


def test_requeue_resets_chunks_but_keeps_retry_counts(session_factory, make_job) -> None:
    job_id = make_job(max_attempts=3)
    _claim(session_factory, job_id, NOW - timedelta(minutes=8))
    chunks = [AudioChunk(index=i, path=f"/tmp/r_chunk_{i}.mp3", start=i * 180.0, end=(i + 1) * 180.0) for i in range(3)]
    with session_scope(session_factory) as db:
        repository.register_chunks(db, job_id, chunks)
        repository.update_chunk_status(db, job_id, 0, ChunkStatus.COMPLETED, transcript="first part")
        repository.update_chunk_status(db, job_id, 1, ChunkStatus.FAILED, error="UPLOAD_FAILED: 502")
        repository.update_chunk_status(db, job_id, 2, ChunkStatus.PROCESSING)

    stats = _reaper(session_factory, []).sweep()

    assert stats.requeued == 1
    with session_scope(session_factory) as db:
        job = repository.require_job(db, job_id)
        rows = repository.list_chunks(db, job_id)
        assert job.completed_chunks == 0
        assert job.total_chunks == 3
        assert [row.status for row in rows] == [ChunkStatus.PENDING.value] * 3
        assert [row.retry_count for row in rows] == [0, 1, 0]
        assert all(row.error_message is None for row in rows)


def test_exhausted_job_fails_permanently(session_factory, make_job) -> None:
    job_id = make_job(max_attempts=1)
    _claim(session_factory, job_id, NOW - timedelta(minutes=40), max_duration_s=1800)
    submitted: list[QueueSubmission] = []

    stats = _reaper(session_factory, submitted).sweep()

    assert stats.permanently_failed == 1
    assert submitted == []
    with session_scope(session_factory) as db:
        job = repository.require_job(db, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.timeout_reason == TimeoutReason.MAX_DURATION.value
        assert job.error_message == "Job timed out (maximum duration exceeded)"


def test_healthy_job_is_left_alone(session_factory, make_job) -> None:
    job_id = make_job()
    _claim(session_factory, job_id, NOW - timedelta(minutes=1))

    stats = _reaper(session_factory, []).sweep()

    assert stats.processed == 0
    with session_scope(session_factory) as db:
        assert repository.require_job(db, job_id).status == JobStatus.PROCESSING.value


def test_overlapping_sweep_is_skipped(session_factory) -> None:
    reaper = _reaper(session_factory, [])
    reaper._lock.acquire()
    try:
        assert reaper.sweep().skipped is True
    finally:
        reaper._lock.release()
    assert reaper.sweep().skipped is False


def test_submit_failure_does_not_stop_the_sweep(session_factory, make_job) -> None:
    first = make_job()
    second = make_job()
    for job_id in (first, second):
        _claim(session_factory, job_id, NOW - timedelta(minutes=10))
    submitted: list[int] = []

    def submit(submission: QueueSubmission) -> None:
        if submission.job_id == first:
            raise ConnectionError("queue unavailable")
        submitted.append(submission.job_id)

    stats = Reaper(submit, session_factory, heartbeat_timeout_s=300, clock=lambda: NOW).sweep()

    assert submitted == [second]
    assert stats.processed == 2
    assert stats.requeued == 1


def test_timeout_message_reports_silence_minutes() -> None:
    stalled = StalledJob(
        job_id=1,
        attempts=1,
        max_attempts=3,
        reason=TimeoutReason.HEARTBEAT_TIMEOUT,
        heartbeat_at=NOW - timedelta(minutes=6, seconds=30),
    )
    assert timeout_message(stalled, NOW) == "Job timed out (no heartbeat for 6 min)"
