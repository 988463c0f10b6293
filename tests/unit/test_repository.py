from __future__ import annotations

import threading
from datetime import datetime, timedelta

import pytest

from app.core.constants import CallerRole, ChunkStatus, JobStatus, TimeoutReason
from app.core.errors import JobNotFoundError, StaleAttemptError
from app.db.session import session_scope
from app.schemas.job import CallerScope
from app.services import repository
from app.services.splitter import AudioChunk

NOW = datetime(2024, 5, 1, 12, 0, 0)


def _chunks(count: int) -> list[AudioChunk]:
    return [AudioChunk(index=i, path=f"/tmp/a_chunk_{i}.mp3", start=i * 180.0, end=(i + 1) * 180.0) for i in range(count)]


def test_claim_moves_pending_job_to_processing(session_factory, make_job) -> None:
    job_id = make_job()

    with session_scope(session_factory) as db:
        claim = repository.claim_job(db, job_id, max_duration_s=1800, now=NOW)

    assert claim.ok is True
    assert claim.attempts == 1
    with session_scope(session_factory) as db:
        job = repository.require_job(db, job_id)
        assert job.status == JobStatus.PROCESSING.value
        assert job.started_at == NOW
        assert job.heartbeat_at == NOW
        assert job.timeout_at == NOW + timedelta(seconds=1800)
        assert job.timeout_reason == TimeoutReason.NONE.value


def test_claim_refuses_processing_and_exhausted_jobs(session_factory, make_job) -> None:
    job_id = make_job(max_attempts=1)

    with session_scope(session_factory) as db:
        assert repository.claim_job(db, job_id, max_duration_s=60).ok is True
    with session_scope(session_factory) as db:
        refused = repository.claim_job(db, job_id, max_duration_s=60)
    assert refused.ok is False
    assert refused.reason == "job is processing"

    with session_scope(session_factory) as db:
        repository.finish_job(db, job_id, JobStatus.FAILED, error="boom")
    with session_scope(session_factory) as db:
        exhausted = repository.claim_job(db, job_id, max_duration_s=60)
    assert exhausted.ok is False
    assert exhausted.reason == "attempts exhausted (1/1)"


def test_claim_missing_job_raises(session_factory) -> None:
    with session_scope(session_factory) as db:
        with pytest.raises(JobNotFoundError):
            repository.claim_job(db, 999, max_duration_s=60)


def test_concurrent_claims_admit_exactly_one(session_factory, make_job) -> None:
    job_id = make_job()
    workers = 6
    barrier = threading.Barrier(workers)
    results: list[bool] = []
    lock = threading.Lock()

    def claim() -> None:
        barrier.wait()
        with session_scope(session_factory) as db:
            ok = repository.claim_job(db, job_id, max_duration_s=60).ok
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=claim) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    with session_scope(session_factory) as db:
        assert repository.require_job(db, job_id).attempts == 1


def test_finish_job_ignores_jobs_no_longer_processing(session_factory, make_job) -> None:
    job_id = make_job()
    with session_scope(session_factory) as db:
        repository.claim_job(db, job_id, max_duration_s=60, now=NOW)
    with session_scope(session_factory) as db:
        assert repository.mark_timed_out(db, job_id, TimeoutReason.HEARTBEAT_TIMEOUT, "stale", now=NOW)

    with session_scope(session_factory) as db:
        job = repository.finish_job(db, job_id, JobStatus.COMPLETED)
        assert job.status == JobStatus.FAILED.value
        assert job.timeout_reason == TimeoutReason.HEARTBEAT_TIMEOUT.value


def test_completed_job_reports_full_progress(session_factory, make_job) -> None:
    job_id = make_job()
    with session_scope(session_factory) as db:
        repository.claim_job(db, job_id, max_duration_s=60, now=NOW)
        repository.update_progress(db, job_id, progress=140, step="almost")
    with session_scope(session_factory) as db:
        assert repository.require_job(db, job_id).progress == 100
        job = repository.finish_job(db, job_id, JobStatus.COMPLETED, quality_status="complete", now=NOW)
        assert job.progress == 100
        assert job.completed_at == NOW
        assert job.heartbeat_at is None
        assert job.timeout_at is None


def test_retry_only_accepts_failed_jobs(session_factory, make_job) -> None:
    job_id = make_job(max_attempts=1)

    with session_scope(session_factory) as db:
        assert repository.retry_job(db, job_id) is False

    with session_scope(session_factory) as db:
        repository.claim_job(db, job_id, max_duration_s=60)
    with session_scope(session_factory) as db:
        assert repository.retry_job(db, job_id) is False

    with session_scope(session_factory) as db:
        repository.finish_job(db, job_id, JobStatus.FAILED, error="transcribe: boom", failed_step="transcribe")
    with session_scope(session_factory) as db:
        assert repository.retry_job(db, job_id) is True

    with session_scope(session_factory) as db:
        job = repository.require_job(db, job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.progress == 0
        assert job.error_message is None
        assert job.failed_step is None
        assert job.attempts == 1
        assert job.max_attempts == 2

    with session_scope(session_factory) as db:
        assert repository.claim_job(db, job_id, max_duration_s=60).ok is True


def test_retry_missing_job_raises(session_factory) -> None:
    with session_scope(session_factory) as db:
        with pytest.raises(JobNotFoundError):
            repository.retry_job(db, 404)


def test_chunk_counters_follow_chunk_rows(session_factory, make_job) -> None:
    job_id = make_job()
    with session_scope(session_factory) as db:
        assert repository.register_chunks(db, job_id, _chunks(3)) == 3

    with session_scope(session_factory) as db:
        repository.update_chunk_status(db, job_id, 0, ChunkStatus.COMPLETED, transcript="hello")
        # A repeated completion must not double count.
        repository.update_chunk_status(db, job_id, 0, ChunkStatus.COMPLETED, transcript="again")
        repository.update_chunk_status(db, job_id, 1, ChunkStatus.FAILED, error="UPLOAD_FAILED: 500")

    with session_scope(session_factory) as db:
        job = repository.require_job(db, job_id)
        chunks = repository.list_chunks(db, job_id)
        assert job.total_chunks == 3
        assert job.completed_chunks == 1
        assert chunks[0].transcript == "hello"
        assert chunks[1].status == ChunkStatus.FAILED.value
        assert chunks[1].retry_count == 1
        assert chunks[2].status == ChunkStatus.PENDING.value

    with session_scope(session_factory) as db:
        repository.reset_chunks(db, job_id, clear_retries=False)
    with session_scope(session_factory) as db:
        job = repository.require_job(db, job_id)
        chunks = repository.list_chunks(db, job_id)
        assert job.completed_chunks == 0
        assert {chunk.status for chunk in chunks} == {ChunkStatus.PENDING.value}
        assert chunks[1].retry_count == 1
        assert chunks[1].error_message is None


def test_register_chunks_replaces_previous_set(session_factory, make_job) -> None:
    job_id = make_job()
    with session_scope(session_factory) as db:
        repository.register_chunks(db, job_id, _chunks(4))
    with session_scope(session_factory) as db:
        repository.register_chunks(db, job_id, _chunks(2))
    with session_scope(session_factory) as db:
        assert len(repository.list_chunks(db, job_id)) == 2
        assert repository.require_job(db, job_id).total_chunks == 2


def test_update_unknown_chunk_raises(session_factory, make_job) -> None:
    job_id = make_job()
    with session_scope(session_factory) as db:
        with pytest.raises(ValueError):
            repository.update_chunk_status(db, job_id, 7, ChunkStatus.COMPLETED, transcript="x")


def test_stalled_jobs_are_timed_out_and_requeued(session_factory, make_job) -> None:
    stale_id = make_job()
    overdue_id = make_job()
    fresh_id = make_job()
    with session_scope(session_factory) as db:
        repository.claim_job(db, stale_id, max_duration_s=1800, now=NOW - timedelta(minutes=10))
        repository.claim_job(db, overdue_id, max_duration_s=60, now=NOW - timedelta(minutes=2))
        repository.heartbeat(db, overdue_id, now=NOW)
        repository.claim_job(db, fresh_id, max_duration_s=1800, now=NOW)

    with session_scope(session_factory) as db:
        stalled = repository.find_stalled_jobs(db, heartbeat_timeout_s=300, now=NOW)
    reasons = {item.job_id: item.reason for item in stalled}
    assert reasons == {
        stale_id: TimeoutReason.HEARTBEAT_TIMEOUT,
        overdue_id: TimeoutReason.MAX_DURATION,
    }

    with session_scope(session_factory) as db:
        assert repository.mark_timed_out(db, stale_id, TimeoutReason.HEARTBEAT_TIMEOUT, "stale", now=NOW)
        # A second sweep loses the race.
        assert not repository.mark_timed_out(db, stale_id, TimeoutReason.HEARTBEAT_TIMEOUT, "stale", now=NOW)
        assert repository.requeue_failed_job(db, stale_id, now=NOW)

    with session_scope(session_factory) as db:
        job = repository.require_job(db, stale_id)
        assert job.status == JobStatus.PENDING.value
        assert job.current_step == repository.REQUEUED_STEP_LABEL
        assert job.timeout_reason == TimeoutReason.NONE.value
        assert job.attempts == 1
        assert job.heartbeat_at is None


def test_requeue_refuses_exhausted_jobs(session_factory, make_job) -> None:
    job_id = make_job(max_attempts=1)
    with session_scope(session_factory) as db:
        repository.claim_job(db, job_id, max_duration_s=60, now=NOW)
    with session_scope(session_factory) as db:
        repository.mark_timed_out(db, job_id, TimeoutReason.MAX_DURATION, "too long", now=NOW)
    with session_scope(session_factory) as db:
        assert repository.requeue_failed_job(db, job_id, now=NOW) is False
        assert repository.require_job(db, job_id).status == JobStatus.FAILED.value


def test_visibility_follows_caller_role(session_factory, make_job) -> None:
    own = make_job(user_id=1, company_id=10)
    colleague = make_job(user_id=2, company_id=10)
    other = make_job(user_id=3, company_id=20)

    member = CallerScope(user_id=1, company_id=10, role=CallerRole.MEMBER)
    company_admin = CallerScope(user_id=2, company_id=10, role=CallerRole.COMPANY_ADMIN)
    admin = CallerScope(role=CallerRole.ADMIN)

    with session_scope(session_factory) as db:
        assert [job.id for job in repository.list_jobs(db, member)] == [own]
        assert [job.id for job in repository.list_jobs(db, company_admin)] == [colleague, own]
        assert [job.id for job in repository.list_jobs(db, admin)] == [other, colleague, own]
        assert repository.get_job(db, colleague, member) is None
        assert repository.get_job(db, colleague, company_admin) is not None
        assert repository.get_job(db, other, company_admin) is None


def test_cleanup_removes_only_old_terminal_jobs(session_factory, make_job) -> None:
    old_id = make_job()
    recent_id = make_job()
    pending_id = make_job()
    with session_scope(session_factory) as db:
        for job_id in (old_id, recent_id):
            repository.claim_job(db, job_id, max_duration_s=60, now=NOW)
            repository.register_chunks(db, job_id, _chunks(2))
        repository.finish_job(db, old_id, JobStatus.COMPLETED, now=NOW - timedelta(days=40))
        repository.finish_job(db, recent_id, JobStatus.FAILED, now=NOW - timedelta(days=2))

    with session_scope(session_factory) as db:
        removed = repository.cleanup_old_jobs(db, days=30, now=NOW)
    assert removed == [old_id]

    with session_scope(session_factory) as db:
        assert repository.get_job(db, old_id) is None
        assert repository.list_chunks(db, old_id) == []
        assert repository.get_job(db, recent_id) is not None
        assert repository.list_pending_job_ids(db) == [pending_id]


def test_superseded_attempt_cannot_write_after_reclaim(session_factory, make_job) -> None:
    job_id = make_job()
    with session_scope(session_factory) as db:
        first = repository.claim_job(db, job_id, max_duration_s=60, now=NOW - timedelta(hours=1))
    with session_scope(session_factory) as db:
        assert repository.mark_timed_out(db, job_id, TimeoutReason.MAX_DURATION, "too long", now=NOW)
        assert repository.requeue_failed_job(db, job_id, now=NOW)
    with session_scope(session_factory) as db:
        second = repository.claim_job(db, job_id, max_duration_s=1800, now=NOW)
        repository.register_chunks(db, job_id, _chunks(2), attempt=second.attempts)
    assert (first.attempts, second.attempts) == (1, 2)

    # The first run is still going and keeps writing with its own attempt.
    with session_scope(session_factory) as db:
        job = repository.finish_job(db, job_id, JobStatus.COMPLETED, attempt=first.attempts)
        assert job.status == JobStatus.PROCESSING.value
        assert job.attempts == 2
        assert repository.heartbeat(db, job_id, attempt=first.attempts, now=NOW + timedelta(minutes=5)) is False
        with pytest.raises(StaleAttemptError):
            repository.update_progress(db, job_id, attempt=first.attempts, progress=90, step="late")
        with pytest.raises(StaleAttemptError):
            repository.register_chunks(db, job_id, _chunks(5), attempt=first.attempts)
        with pytest.raises(StaleAttemptError):
            repository.update_chunk_status(
                db, job_id, 0, ChunkStatus.COMPLETED, transcript="late", attempt=first.attempts
            )

    with session_scope(session_factory) as db:
        job = repository.require_job(db, job_id)
        assert job.status == JobStatus.PROCESSING.value
        assert job.heartbeat_at == NOW
        assert job.progress == 0
        assert job.total_chunks == 2
        assert job.completed_chunks == 0
        assert [chunk.status for chunk in repository.list_chunks(db, job_id)] == [ChunkStatus.PENDING.value] * 2

    with session_scope(session_factory) as db:
        assert repository.heartbeat(db, job_id, attempt=second.attempts) is True
        finished = repository.finish_job(db, job_id, JobStatus.COMPLETED, attempt=second.attempts)
        assert finished.status == JobStatus.COMPLETED.value


def test_fence_attempt_rejects_other_claims(session_factory, make_job) -> None:
    job_id = make_job()
    with session_scope(session_factory) as db:
        with pytest.raises(StaleAttemptError):
            repository.fence_attempt(db, job_id, 1)
    with session_scope(session_factory) as db:
        claim = repository.claim_job(db, job_id, max_duration_s=60)
    with session_scope(session_factory) as db:
        repository.fence_attempt(db, job_id, claim.attempts)
        with pytest.raises(StaleAttemptError) as info:
            repository.fence_attempt(db, job_id, claim.attempts + 1)
    assert info.value.attempt == 2
    with session_scope(session_factory) as db:
        with pytest.raises(JobNotFoundError):
            repository.fence_attempt(db, 999, 1)
