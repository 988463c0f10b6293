"""Huey queue definitions, periodic maintenance and consumer entrypoint."""

from __future__ import annotations

import structlog
from huey import SqliteHuey, crontab

from app.core.errors import PipelineError
from app.core.logging import configure_logging
from app.core.settings import PATHS, get_settings
from app.db.session import SessionLocal, init_db, session_scope
from app.schemas.job import QueueSubmission
from app.services import repository
from app.services.heartbeat import heartbeat_registry
from app.services.pipeline import execute_job
from app.services.reaper import Reaper

logger = structlog.get_logger(__name__)

settings = get_settings()

huey = SqliteHuey("audio-pipeline", filename=str(PATHS.queue_path))


class JobAttemptFailed(PipelineError):
    """Raised from the task so huey redelivers a failed job that still has attempts."""


@huey.task(retries=max(0, settings.max_attempts - 1), retry_delay=int(settings.retry_base_delay_s * 5))
def process_audio_job(payload: dict) -> dict:
    submission = QueueSubmission.model_validate(payload)
    log = logger.bind(job_id=submission.job_id)
    log.info("queue_job_started")
    outcome = execute_job(submission)
    if outcome.status == "failed" and outcome.retryable:
        log.warning("queue_job_failed_will_retry", attempts=outcome.attempts, error=outcome.error)
        raise JobAttemptFailed(outcome.error or "job failed")
    log.info("queue_job_finished", status=outcome.status)
    return {"job_id": outcome.job_id, "status": outcome.status, "record_id": outcome.record_id}


def enqueue_job(submission: QueueSubmission) -> None:
    process_audio_job(submission.model_dump())
    logger.info("job_enqueued", job_id=submission.job_id)


def reaper_schedule(interval_s: int):
    """Cron validator firing every ``interval_s`` seconds (see ``Settings.reaper_interval_s``)."""
    if interval_s < 3600:
        return crontab(minute=f"*/{interval_s // 60}")
    return crontab(minute="0", hour=f"*/{interval_s // 3600}")


reaper = Reaper.from_settings(settings, enqueue_job, SessionLocal)


@huey.periodic_task(reaper_schedule(settings.reaper_interval_s))
@huey.lock_task("reap-stalled-jobs")
def reap_stalled_jobs() -> None:
    reaper.sweep()


@huey.periodic_task(crontab(minute="0", hour="3"))
def cleanup_old_jobs() -> None:
    with session_scope(SessionLocal) as db:
        repository.cleanup_old_jobs(db, days=settings.job_retention_days)


@huey.on_shutdown()
def stop_heartbeats() -> None:
    heartbeat_registry.stop_all()


def run_consumer() -> None:
    configure_logging(settings.log_level, settings.log_json)
    init_db()
    consumer = huey.create_consumer(workers=settings.worker_concurrency, worker_type="thread", periodic=True)
    logger.info("consumer_starting", workers=settings.worker_concurrency)
    consumer.run()


if __name__ == "__main__":
    run_consumer()
