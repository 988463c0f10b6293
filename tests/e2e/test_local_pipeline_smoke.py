import os
import shutil

import pytest

from app.db.session import SessionLocal, init_db, session_scope
from app.services import repository
from app.services.pipeline import build_orchestrator


@pytest.mark.e2e
@pytest.mark.skipif(
    os.environ.get("RUN_E2E") != "1",
    reason="Set RUN_E2E=1, AUDIO_PIPELINE_E2E_AUDIO and real service API keys + ffmpeg to run e2e.",
)
def test_pipeline_smoke(tmp_path) -> None:
    source = os.environ.get("AUDIO_PIPELINE_E2E_AUDIO")
    if not source or shutil.which("ffmpeg") is None:
        pytest.skip("needs AUDIO_PIPELINE_E2E_AUDIO and ffmpeg on PATH")

    audio = tmp_path / os.path.basename(source)
    shutil.copy2(source, audio)
    init_db()
    with session_scope(SessionLocal) as db:
        job = repository.create_job(db, input_path=str(audio), input_filename=audio.name, user_id=1, company_id=1)
        submission = repository.submission_for(job)

    outcome = build_orchestrator().run(submission)

    assert outcome.status == "completed", outcome.error
    assert outcome.record_id is not None
