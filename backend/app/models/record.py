"""Persisted processing result, one row per job."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.clock import utcnow
from app.db.base import Base


class Record(Base):
    __tablename__ = "records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    file_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    company_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    staff_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    audio_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transcript: Mapped[str] = mapped_column(Text, nullable=False, default="")
    outputs_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    work_items_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    quality_status: Mapped[str] = mapped_column(String(32), nullable=False, default="complete")
    chunk_success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    warnings_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
