"""Idempotent persistence of a job's result record."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import utcnow
from app.core.constants import CallerRole, QualityStatus
from app.db.session import SessionLocal, session_scope
from app.models.record import Record
from app.schemas.job import CallerScope, RecordOut
from app.services import repository
from app.services.cache import TTLCache, record_cache

logger = structlog.get_logger(__name__)

_UPDATABLE_COLUMNS = (
    "transcript",
    "outputs_json",
    "work_items_json",
    "quality_status",
    "chunk_success_rate",
    "warnings_json",
    "audio_path",
)


@dataclass
class RecordFields:
    transcript: str
    outputs: dict[str, Any] = field(default_factory=dict)
    work_items: list[str] = field(default_factory=list)
    quality_status: QualityStatus = QualityStatus.COMPLETE
    success_rate: float = 1.0
    warnings: list[dict[str, object]] = field(default_factory=list)
    file_id: Optional[str] = None
    user_id: Optional[int] = None
    company_id: Optional[int] = None
    staff_id: Optional[int] = None
    audio_path: Optional[str] = None


@dataclass(frozen=True)
class PersistResult:
    record_id: int
    created: bool


def _row_values(job_id: int, fields: RecordFields) -> dict[str, Any]:
    now = utcnow()
    return {
        "job_id": job_id,
        "file_id": fields.file_id,
        "user_id": fields.user_id,
        "company_id": fields.company_id,
        "staff_id": fields.staff_id,
        "audio_path": fields.audio_path,
        "transcript": fields.transcript,
        "outputs_json": json.dumps(fields.outputs, ensure_ascii=False, default=str),
        "work_items_json": json.dumps(fields.work_items, ensure_ascii=False),
        "quality_status": fields.quality_status.value,
        "chunk_success_rate": round(fields.success_rate * 100, 2),
        "warnings_json": json.dumps(fields.warnings, ensure_ascii=False, default=str),
        "created_at": now,
        "updated_at": now,
    }


def upsert_record(db: Session, job_id: int, fields: RecordFields) -> PersistResult:
    """Insert or overwrite the record keyed by ``job_id``."""
    values = _row_values(job_id, fields)
    existing_id = db.scalars(select(Record.id).where(Record.job_id == job_id)).first()
    dialect = db.get_bind().dialect.name

    if dialect in ("sqlite", "postgresql"):
        dialect_insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = dialect_insert(Record).values(**values)
        update_set = {name: getattr(stmt.excluded, name) for name in _UPDATABLE_COLUMNS}
        update_set["updated_at"] = values["updated_at"]
        db.execute(stmt.on_conflict_do_update(index_elements=[Record.job_id], set_=update_set))
    elif existing_id is None:
        db.add(Record(**values))
    else:
        record = db.get(Record, existing_id)
        for name in _UPDATABLE_COLUMNS:
            setattr(record, name, values[name])
        record.updated_at = values["updated_at"]
    db.flush()

    record_id = db.scalars(select(Record.id).where(Record.job_id == job_id)).one()
    return PersistResult(record_id=record_id, created=existing_id is None)


class RecordPersister:
    def __init__(self, session_factory: sessionmaker = SessionLocal, cache: TTLCache = record_cache) -> None:
        self.session_factory = session_factory
        self.cache = cache

    def persist(self, job_id: int, fields: RecordFields, *, attempt: Optional[int] = None) -> PersistResult:
        with session_scope(self.session_factory) as db:
            if attempt is not None:
                repository.fence_attempt(db, job_id, attempt)
            result = upsert_record(db, job_id, fields)
            repository.set_record_id(db, job_id, result.record_id)
        # Invalidate only after commit so a concurrent read cannot re-cache stale rows.
        self.cache.invalidate_company(fields.company_id)
        logger.info(
            "record_persisted",
            job_id=job_id,
            record_id=result.record_id,
            created=result.created,
            quality_status=fields.quality_status.value,
        )
        return result


def to_record_out(record: Record) -> RecordOut:
    def _load(value: str, default: Any) -> Any:
        try:
            return json.loads(value) if value else default
        except ValueError:
            return default

    return RecordOut(
        id=record.id,
        job_id=record.job_id,
        file_id=record.file_id,
        user_id=record.user_id,
        company_id=record.company_id,
        staff_id=record.staff_id,
        transcript=record.transcript,
        outputs=_load(record.outputs_json, {}),
        work_items=_load(record.work_items_json, []),
        quality_status=record.quality_status,
        chunk_success_rate=record.chunk_success_rate,
        warnings=_load(record.warnings_json, []),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def list_records(db: Session, scope: CallerScope, *, limit: int = 50) -> list[Record]:
    stmt = select(Record)
    if scope.role == CallerRole.COMPANY_ADMIN:
        stmt = stmt.where(Record.company_id == scope.company_id)
    elif scope.role == CallerRole.MEMBER:
        stmt = stmt.where(Record.user_id == scope.user_id)
    stmt = stmt.order_by(Record.id.desc()).limit(limit)
    return list(db.scalars(stmt))
