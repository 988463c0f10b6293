"""Per-job step execution records."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.constants import STEP_ORDER, STEP_SEQUENCE, StepName, StepStatus
from app.core.errors import StepStateError
from app.models.job import JobStep

logger = structlog.get_logger(__name__)


def _name(step: Union[StepName, str]) -> str:
    return step.value if isinstance(step, StepName) else step


def _order(name: str) -> int:
    try:
        return STEP_ORDER[StepName(name)]
    except ValueError:
        return len(STEP_ORDER) + 1


def _get_step(db: Session, job_id: int, name: str) -> Optional[JobStep]:
    stmt = select(JobStep).where(JobStep.job_id == job_id, JobStep.step_name == name)
    return db.scalars(stmt).first()


def _get_or_create(db: Session, job_id: int, name: str) -> JobStep:
    step = _get_step(db, job_id, name)
    if step is None:
        step = JobStep(
            job_id=job_id,
            step_name=name,
            step_order=_order(name),
            status=StepStatus.PENDING.value,
            metadata_json="{}",
        )
        db.add(step)
        db.flush()
    return step


def _duration_ms(started_at: Optional[datetime], completed_at: datetime) -> Optional[int]:
    if started_at is None:
        return None
    return max(0, int((completed_at - started_at).total_seconds() * 1000))


def list_steps(db: Session, job_id: int) -> list[JobStep]:
    stmt = select(JobStep).where(JobStep.job_id == job_id).order_by(JobStep.step_order.asc())
    return list(db.scalars(stmt))


def initialize_steps(db: Session, job_id: int) -> list[JobStep]:
    """Create pending rows for every pipeline step; existing rows are left alone."""
    existing = {step.step_name for step in list_steps(db, job_id)}
    for step in STEP_SEQUENCE:
        if step.value not in existing:
            db.add(
                JobStep(
                    job_id=job_id,
                    step_name=step.value,
                    step_order=STEP_ORDER[step],
                    status=StepStatus.PENDING.value,
                    metadata_json="{}",
                )
            )
    db.flush()
    return list_steps(db, job_id)


def reset_steps(db: Session, job_id: int) -> list[JobStep]:
    """Return every step to pending at the start of a new attempt."""
    steps = initialize_steps(db, job_id)
    for step in steps:
        step.status = StepStatus.PENDING.value
        step.started_at = None
        step.completed_at = None
        step.duration_ms = None
        step.error_message = None
        step.metadata_json = "{}"
    db.flush()
    return steps


def start_step(db: Session, job_id: int, step: Union[StepName, str], *, now: Optional[datetime] = None) -> JobStep:
    name = _name(step)
    record = _get_or_create(db, job_id, name)
    if record.status == StepStatus.SKIPPED.value:
        raise StepStateError(f"step {name} was skipped and cannot be started")

    running = [
        other
        for other in list_steps(db, job_id)
        if other.status == StepStatus.RUNNING.value and other.step_name != name
    ]
    if running:
        raise StepStateError(f"step {running[0].step_name} is still running")

    record.status = StepStatus.RUNNING.value
    record.started_at = now or utcnow()
    record.completed_at = None
    record.duration_ms = None
    record.error_message = None
    db.flush()
    logger.info("step_started", job_id=job_id, step=name)
    return record


def complete_step(
    db: Session,
    job_id: int,
    step: Union[StepName, str],
    metadata: Optional[dict[str, object]] = None,
    *,
    now: Optional[datetime] = None,
) -> JobStep:
    name = _name(step)
    record = _get_step(db, job_id, name)
    if record is None or record.status != StepStatus.RUNNING.value:
        current = record.status if record is not None else "missing"
        raise StepStateError(f"step {name} cannot complete from {current}")

    completed_at = now or utcnow()
    record.status = StepStatus.COMPLETED.value
    record.completed_at = completed_at
    record.duration_ms = _duration_ms(record.started_at, completed_at)
    record.metadata_json = json.dumps(metadata or {}, ensure_ascii=False, default=str)
    db.flush()
    logger.info("step_completed", job_id=job_id, step=name, duration_ms=record.duration_ms)
    return record


def fail_step(
    db: Session,
    job_id: int,
    step: Union[StepName, str],
    error: str,
    *,
    now: Optional[datetime] = None,
) -> JobStep:
    name = _name(step)
    record = _get_or_create(db, job_id, name)
    completed_at = now or utcnow()
    record.status = StepStatus.FAILED.value
    record.completed_at = completed_at
    record.duration_ms = _duration_ms(record.started_at, completed_at)
    record.error_message = error
    db.flush()
    logger.warning("step_failed", job_id=job_id, step=name, error=error)
    return record


def skip_step(db: Session, job_id: int, step: Union[StepName, str], reason: str) -> JobStep:
    name = _name(step)
    record = _get_or_create(db, job_id, name)
    if record.status in (StepStatus.RUNNING.value, StepStatus.COMPLETED.value):
        raise StepStateError(f"step {name} cannot be skipped from {record.status}")
    record.status = StepStatus.SKIPPED.value
    record.metadata_json = json.dumps({"reason": reason}, ensure_ascii=False)
    db.flush()
    logger.info("step_skipped", job_id=job_id, step=name, reason=reason)
    return record
