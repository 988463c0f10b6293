"""Project-wide constants and state definitions."""

from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


CLAIMABLE_STATES = {JobStatus.PENDING, JobStatus.FAILED}
TERMINAL_STATES = {JobStatus.COMPLETED, JobStatus.FAILED}


class ChunkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepName(str, Enum):
    CONVERT = "convert"
    SPLIT = "split"
    TRANSCRIBE = "transcribe"
    EXTERNAL_WORKFLOW = "external_workflow"
    PERSIST = "persist"
    CLEANUP = "cleanup"


STEP_SEQUENCE = [
    StepName.CONVERT,
    StepName.SPLIT,
    StepName.TRANSCRIBE,
    StepName.EXTERNAL_WORKFLOW,
    StepName.PERSIST,
    StepName.CLEANUP,
]

STEP_ORDER = {step: position for position, step in enumerate(STEP_SEQUENCE, start=1)}

STEP_DESCRIPTIONS = {
    StepName.CONVERT: "Audio format conversion",
    StepName.SPLIT: "Audio splitting",
    StepName.TRANSCRIBE: "Speech-to-text processing",
    StepName.EXTERNAL_WORKFLOW: "Text analysis workflow",
    StepName.PERSIST: "Save record",
    StepName.CLEANUP: "File cleanup",
}


class TimeoutReason(str, Enum):
    NONE = "none"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    MAX_DURATION = "max_duration"
    MANUAL = "manual"


class QualityStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"


class ErrorCode(str, Enum):
    UPLOAD_FAILED = "UPLOAD_FAILED"
    UPLOAD_TIMEOUT = "UPLOAD_TIMEOUT"
    WORKFLOW_FAILED = "WORKFLOW_FAILED"
    WORKFLOW_TIMEOUT = "WORKFLOW_TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    CHUNK_PROCESS_FAILED = "CHUNK_PROCESS_FAILED"
    INSUFFICIENT_SUCCESS_RATE = "INSUFFICIENT_SUCCESS_RATE"


class CallerRole(str, Enum):
    ADMIN = "admin"
    COMPANY_ADMIN = "company_admin"
    MEMBER = "member"


DEFAULT_JOB_TYPE = "audio"

CONVERTIBLE_AUDIO_SUFFIXES = {".m4a", ".wav", ".aac", ".flac", ".ogg", ".wma"}
TARGET_AUDIO_SUFFIX = ".mp3"

# Chunk transcription is reported inside this slice of overall job progress.
TRANSCRIBE_PROGRESS_START = 10
TRANSCRIBE_PROGRESS_SPAN = 70
