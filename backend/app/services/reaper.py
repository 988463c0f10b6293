"""Detect stalled jobs, fail them, and requeue those with attempts left."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from app.core.clock import utcnow
from app.core.constants import TimeoutReason
from app.core.settings import Settings
from app.db.session import SessionLocal, session_scope
from app.schemas.job import QueueSubmission
from app.services import repository
from app.services.repository import StalledJob

logger = structlog.get_logger(__name__)

SubmitFn = Callable[[QueueSubmission], None]


@dataclass
class SweepStats:
    processed: int = 0
    requeued: int = 0
    permanently_failed: int = 0
    skipped: bool = False


def timeout_message(stalled: StalledJob, now: datetime) -> str:
    if stalled.reason == TimeoutReason.MAX_DURATION:
        return "Job timed out (maximum duration exceeded)"
    minutes = 0
    if stalled.heartbeat_at is not None:
        minutes = int((now - stalled.heartbeat_at).total_seconds() // 60)
    return f"Job timed out (no heartbeat for {minutes} min)"


class Reaper:
    """Periodic sweep over processing jobs; overlapping sweeps in one process are skipped."""

    def __init__(
        self,
        submit: SubmitFn,
        session_factory: sessionmaker = SessionLocal,
        *,
        heartbeat_timeout_s: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.submit = submit
        self.session_factory = session_factory
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self._clock = clock
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        submit: SubmitFn,
        session_factory: sessionmaker = SessionLocal,
    ) -> "Reaper":
        return cls(submit, session_factory, heartbeat_timeout_s=settings.heartbeat_timeout_s)

    def sweep(self) -> SweepStats:
        if not self._lock.acquire(blocking=False):
            logger.debug("reaper_already_running")
            return SweepStats(skipped=True)
        try:
            return self._sweep()
        finally:
            self._lock.release()

    def _sweep(self) -> SweepStats:
        now = self._clock()
        stats = SweepStats()
        with session_scope(self.session_factory) as db:
            stalled_jobs = repository.find_stalled_jobs(db, heartbeat_timeout_s=self.heartbeat_timeout_s, now=now)
        if not stalled_jobs:
            logger.debug("reaper_no_stalled_jobs")
            return stats

        logger.info("reaper_found_stalled_jobs", count=len(stalled_jobs))
        for stalled in stalled_jobs:
            try:
                self._reap(stalled, now, stats)
            except Exception:
                logger.exception("reaper_job_failed", job_id=stalled.job_id)
        logger.info(
            "reaper_completed",
            processed=stats.processed,
            requeued=stats.requeued,
            permanently_failed=stats.permanently_failed,
        )
        return stats

    def _reap(self, stalled: StalledJob, now: datetime, stats: SweepStats) -> None:
        message = timeout_message(stalled, now)
        with session_scope(self.session_factory) as db:
            marked = repository.mark_timed_out(db, stalled.job_id, stalled.reason, message, now=now)
        if not marked:
            logger.info("reaper_job_no_longer_processing", job_id=stalled.job_id)
            return
        stats.processed += 1
        logger.warning(
            "job_timed_out",
            job_id=stalled.job_id,
            reason=stalled.reason.value,
            attempts=stalled.attempts,
            max_attempts=stalled.max_attempts,
        )

        if stalled.attempts >= stalled.max_attempts:
            stats.permanently_failed += 1
            logger.error("job_permanently_failed", job_id=stalled.job_id, attempts=stalled.attempts)
            return

        submission: Optional[QueueSubmission] = None
        with session_scope(self.session_factory) as db:
            if repository.requeue_failed_job(db, stalled.job_id, now=now):
                submission = repository.submission_for(repository.require_job(db, stalled.job_id))
        if submission is None:
            logger.warning("job_requeue_skipped", job_id=stalled.job_id)
            return

        self.submit(submission)
        stats.requeued += 1
        logger.info("job_requeued", job_id=stalled.job_id, attempts=stalled.attempts)
