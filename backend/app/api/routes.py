"""FastAPI route definitions."""

from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, UploadFile
from sse_starlette.sse import EventSourceResponse
from sqlalchemy.orm import Session

from app.core.constants import TERMINAL_STATES, CallerRole, JobStatus
from app.core.settings import APP_VERSION, PATHS, get_settings
from app.db.session import SessionLocal, get_db_session
from app.schemas.job import (
    CallerScope,
    JobChunkOut,
    JobCreateResponse,
    JobOut,
    JobRetryResponse,
    JobStepOut,
    RecordOut,
)
from app.services import repository, steps
from app.services.cache import record_cache, records_key
from app.services.media import ffmpeg_available, ffprobe_available
from app.services.persister import list_records as query_records
from app.services.persister import to_record_out
from app.workers.queue import enqueue_job

router = APIRouter(prefix="/api", tags=["api"])


def get_caller_scope(
    x_user_id: Optional[int] = Header(None),
    x_company_id: Optional[int] = Header(None),
    x_role: CallerRole = Header(CallerRole.MEMBER),
) -> CallerScope:
    return CallerScope(user_id=x_user_id, company_id=x_company_id, role=x_role)


def _is_terminal(status: str) -> bool:
    return any(status == state.value for state in TERMINAL_STATES)


async def _save_upload(upload: UploadFile, target: Path, max_bytes: int) -> int:
    target.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    try:
        with target.open("wb") as f:
            while True:
                chunk = await upload.read(1024 * 1024)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise HTTPException(status_code=413, detail="Uploaded file exceeds max size")
                f.write(chunk)
    except HTTPException:
        target.unlink(missing_ok=True)
        raise
    if written == 0:
        target.unlink(missing_ok=True)
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return written


def _scoped_job(db: Session, job_id: int, scope: CallerScope):
    job = repository.get_job(db, job_id, scope)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/health")
def health(db: Session = Depends(get_db_session)) -> dict[str, object]:
    pending = len(repository.list_pending_job_ids(db))
    return {
        "version": APP_VERSION,
        "ffmpeg_available": ffmpeg_available(),
        "ffprobe_available": ffprobe_available(),
        "queue_db": str(PATHS.queue_path),
        "pending_jobs": pending,
    }


@router.post("/jobs", response_model=JobCreateResponse)
async def create_job(
    audio_file: UploadFile = File(...),
    file_id: str = Form(""),
    staff_id: Optional[int] = Form(None),
    prompt: str = Form(""),
    scope: CallerScope = Depends(get_caller_scope),
    db: Session = Depends(get_db_session),
) -> JobCreateResponse:
    settings = get_settings()
    max_bytes = int(settings.max_upload_mb) * 1024 * 1024

    if not audio_file.filename:
        raise HTTPException(status_code=400, detail="audio_file filename is required")

    raw_name = Path(audio_file.filename).name
    target = PATHS.uploads_root / f"{uuid.uuid4().hex}_{raw_name}"
    await _save_upload(audio_file, target, max_bytes)

    parameters: dict[str, object] = {}
    if prompt.strip():
        parameters["prompt"] = prompt.strip()

    job = repository.create_job(
        db,
        input_path=str(target),
        input_filename=raw_name,
        file_id=file_id.strip() or None,
        user_id=scope.user_id,
        company_id=scope.company_id,
        staff_id=staff_id,
        parameters=parameters,
        max_attempts=settings.max_attempts,
    )
    db.commit()

    enqueue_job(repository.submission_for(job))
    return JobCreateResponse(job_id=job.id, status=job.status)


@router.get("/jobs", response_model=list[JobOut])
def list_jobs(
    status: Optional[JobStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    scope: CallerScope = Depends(get_caller_scope),
    db: Session = Depends(get_db_session),
) -> list[JobOut]:
    jobs = repository.list_jobs(db, scope, status=status, limit=limit)
    return [repository.to_job_out(job, include_steps=False) for job in jobs]


@router.get("/jobs/{job_id}", response_model=JobOut)
def get_job(
    job_id: int,
    scope: CallerScope = Depends(get_caller_scope),
    db: Session = Depends(get_db_session),
) -> JobOut:
    return repository.to_job_out(_scoped_job(db, job_id, scope))


@router.post("/jobs/{job_id}/retry", response_model=JobRetryResponse)
def retry_job(
    job_id: int,
    scope: CallerScope = Depends(get_caller_scope),
    db: Session = Depends(get_db_session),
) -> JobRetryResponse:
    job = _scoped_job(db, job_id, scope)
    if not repository.retry_job(db, job_id):
        db.rollback()
        raise HTTPException(status_code=409, detail=f"Job is {job.status}; only failed jobs can be retried")
    db.commit()

    job = repository.require_job(db, job_id)
    db.refresh(job)
    enqueue_job(repository.submission_for(job))
    return JobRetryResponse(job_id=job_id, accepted=True, status=job.status)


@router.get("/jobs/{job_id}/steps", response_model=list[JobStepOut])
def get_job_steps(
    job_id: int,
    scope: CallerScope = Depends(get_caller_scope),
    db: Session = Depends(get_db_session),
) -> list[JobStepOut]:
    _scoped_job(db, job_id, scope)
    return [repository.to_step_out(step) for step in steps.list_steps(db, job_id)]


@router.get("/jobs/{job_id}/chunks", response_model=list[JobChunkOut])
def get_job_chunks(
    job_id: int,
    scope: CallerScope = Depends(get_caller_scope),
    db: Session = Depends(get_db_session),
) -> list[JobChunkOut]:
    _scoped_job(db, job_id, scope)
    return [repository.to_chunk_out(chunk) for chunk in repository.list_chunks(db, job_id)]


@router.get("/jobs/{job_id}/events")
async def stream_job_events(
    job_id: int,
    scope: CallerScope = Depends(get_caller_scope),
    db: Session = Depends(get_db_session),
) -> EventSourceResponse:
    _scoped_job(db, job_id, scope)

    async def event_generator():
        last_snapshot = None
        while True:
            with SessionLocal() as session:
                job = repository.get_job(session, job_id)
                payload = repository.to_job_out(job).model_dump(mode="json") if job else None

            if payload is None:
                yield {"event": "end", "data": json.dumps({"job_id": job_id, "deleted": True})}
                break

            snapshot = (payload["status"], payload["progress"], payload["current_step"], payload["completed_chunks"])
            if snapshot != last_snapshot:
                last_snapshot = snapshot
                yield {"event": "job_status", "data": json.dumps(payload, ensure_ascii=False)}

            if _is_terminal(payload["status"]):
                yield {"event": "end", "data": json.dumps({"job_id": job_id, "status": payload["status"]})}
                break

            await asyncio.sleep(1)

    return EventSourceResponse(event_generator())


@router.get("/records", response_model=list[RecordOut])
def list_records(
    limit: int = Query(50, ge=1, le=200),
    scope: CallerScope = Depends(get_caller_scope),
    db: Session = Depends(get_db_session),
) -> list[RecordOut]:
    company = "all" if scope.is_admin or scope.company_id is None else scope.company_id
    key = records_key(company, f"{scope.role.value}:{scope.user_id}:{limit}")

    def load() -> list[dict[str, object]]:
        return [to_record_out(record).model_dump(mode="json") for record in query_records(db, scope, limit=limit)]

    return [RecordOut.model_validate(item) for item in record_cache.get_or_load(key, load)]
