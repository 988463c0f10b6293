"""Pydantic schemas for job API responses and queue payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.core.constants import DEFAULT_JOB_TYPE, CallerRole


class CallerScope(BaseModel):
    """Identity of the caller used to restrict job and record visibility."""

    user_id: Optional[int] = None
    company_id: Optional[int] = None
    role: CallerRole = CallerRole.MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == CallerRole.ADMIN


class QueueSubmission(BaseModel):
    job_id: int
    input_path: str
    file_id: Optional[str] = None
    user_id: Optional[int] = None
    company_id: Optional[int] = None
    staff_id: Optional[int] = None
    job_type: str = DEFAULT_JOB_TYPE
    parameters: dict[str, object] = Field(default_factory=dict)


class JobCreateResponse(BaseModel):
    job_id: int
    status: str


class JobRetryResponse(BaseModel):
    job_id: int
    accepted: bool
    status: str


class JobStepOut(BaseModel):
    step_name: str
    step_order: int
    description: str = ""
    status: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    error_message: Optional[str]
    metadata: dict[str, object]


class JobChunkOut(BaseModel):
    chunk_index: int
    status: str
    start_time: Optional[float]
    end_time: Optional[float]
    retry_count: int
    error_message: Optional[str]
    has_transcript: bool


class JobOut(BaseModel):
    id: int
    file_id: Optional[str]
    user_id: Optional[int]
    company_id: Optional[int]
    staff_id: Optional[int]
    input_filename: str
    job_type: str
    status: str
    progress: int
    current_step: Optional[str]
    attempts: int
    max_attempts: int
    started_at: Optional[datetime]
    heartbeat_at: Optional[datetime]
    timeout_at: Optional[datetime]
    timeout_reason: str
    completed_at: Optional[datetime]
    error_message: Optional[str]
    failed_step: Optional[str]
    total_chunks: int
    completed_chunks: int
    quality_status: Optional[str]
    record_id: Optional[int]
    created_at: datetime
    updated_at: datetime
    steps: list[JobStepOut] = Field(default_factory=list)


class RecordOut(BaseModel):
    id: int
    job_id: int
    file_id: Optional[str]
    user_id: Optional[int]
    company_id: Optional[int]
    staff_id: Optional[int]
    transcript: str
    outputs: dict[str, object]
    work_items: list[str]
    quality_status: str
    chunk_success_rate: float
    warnings: list[dict[str, object]]
    created_at: datetime
    updated_at: datetime
