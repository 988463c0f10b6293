from __future__ import annotations

import os
import tempfile

# Must be set before ``app`` is imported so runtime files land in a scratch dir.
os.environ.setdefault("AUDIO_PIPELINE_RUNTIME_ROOT", tempfile.mkdtemp(prefix="audio-pipeline-tests-"))
os.environ.setdefault("AUDIO_PIPELINE_LOG_JSON", "false")

from typing import Iterator, Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.db.session import build_engine, init_db, session_scope  # noqa: E402
from app.services import repository  # noqa: E402


@pytest.fixture
def session_factory(tmp_path) -> Iterator[sessionmaker]:
    engine = build_engine(f"sqlite:///{tmp_path / 'test.sqlite3'}")
    init_db(bind=engine)
    factory = sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def make_job(session_factory, tmp_path):
    def _make(
        *,
        user_id: Optional[int] = 1,
        company_id: Optional[int] = 10,
        max_attempts: int = 3,
        filename: str = "sample.mp3",
    ) -> int:
        audio = tmp_path / filename
        if not audio.exists():
            audio.write_bytes(b"fake-audio-bytes")
        with session_scope(session_factory) as db:
            job = repository.create_job(
                db,
                input_path=str(audio),
                input_filename=filename,
                user_id=user_id,
                company_id=company_id,
                max_attempts=max_attempts,
            )
            return job.id

    return _make
