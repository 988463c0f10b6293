"""Runtime paths and environment-driven settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings loaded from ``AUDIO_PIPELINE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AUDIO_PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    runtime_root: Optional[Path] = Field(default=None, description="Directory for db, queue and job files")
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy URL; defaults to sqlite in runtime_root")
    log_level: str = "INFO"
    log_json: bool = True

    # Remote analysis service
    service_base_url: str = "https://api.dify.ai/v1"
    upload_api_key: str = ""
    transcription_api_key: str = ""
    analysis_api_key: str = ""
    service_user: str = "audio-pipeline"
    upload_timeout_s: float = 300.0
    workflow_timeout_s: float = 240.0
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_s: float = 2.0
    retry_max_delay_s: float = 60.0
    workflow_output_fields: list[str] = Field(default_factory=lambda: ["skillsheet", "lor", "skills", "hope"])
    workflow_structured_field: str = "skillsheet"

    # Chunking
    chunk_concurrency: int = Field(default=10, ge=1)
    chunk_soft_duration_s: float = 180.0
    chunk_hard_duration_s: float = 210.0
    max_chunk_bytes: int = 10 * 1024 * 1024
    fallback_chunk_bytes: int = 4 * 1024 * 1024
    silence_threshold_db: float = -40.0
    silence_min_duration_s: float = 0.5
    min_chunk_success_rate: float = Field(default=0.8, ge=0.0, le=1.0)

    # Liveness
    heartbeat_interval_s: float = 30.0
    heartbeat_timeout_s: float = 300.0
    max_job_duration_s: float = 1800.0
    max_attempts: int = Field(default=3, ge=1)
    reaper_interval_s: int = Field(default=60, ge=60, le=86400, description="Minutes dividing an hour, or hours dividing a day")
    worker_concurrency: int = Field(default=2, ge=1)

    # Read-through cache
    cache_ttl_s: float = 30.0
    cache_max_entries: int = 1000

    max_upload_mb: int = 500
    job_retention_days: int = Field(default=30, ge=1)

    @field_validator("reaper_interval_s")
    @classmethod
    def validate_reaper_interval(cls, v):
        """The reaper runs on a cron schedule, so the interval must divide an hour or a day evenly."""
        if v < 3600:
            if v % 60 or 3600 % v:
                raise ValueError("reaper_interval_s below an hour must be a whole number of minutes dividing 60")
        elif v % 3600 or 86400 % v:
            raise ValueError("reaper_interval_s of an hour or more must be a whole number of hours dividing 24")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    backend_root: Path
    runtime_root: Path
    jobs_root: Path
    uploads_root: Path
    db_path: Path
    queue_path: Path


def build_paths(settings: Optional[Settings] = None) -> AppPaths:
    settings = settings or get_settings()
    backend_root = Path(__file__).resolve().parents[2]
    project_root = backend_root.parent
    runtime_root = settings.runtime_root or project_root / "runtime"
    jobs_root = runtime_root / "jobs"
    uploads_root = runtime_root / "uploads"
    db_path = runtime_root / "app.sqlite3"
    queue_path = runtime_root / "queue.sqlite"

    runtime_root.mkdir(parents=True, exist_ok=True)
    jobs_root.mkdir(parents=True, exist_ok=True)
    uploads_root.mkdir(parents=True, exist_ok=True)

    return AppPaths(
        project_root=project_root,
        backend_root=backend_root,
        runtime_root=runtime_root,
        jobs_root=jobs_root,
        uploads_root=uploads_root,
        db_path=db_path,
        queue_path=queue_path,
    )


APP_VERSION = "0.1.0"
PATHS = build_paths()
