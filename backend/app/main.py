"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import router
from app.core.logging import configure_logging
from app.core.settings import APP_VERSION, PATHS, get_settings
from app.db.session import SessionLocal, init_db
from app.services import repository
from app.workers.queue import enqueue_job

logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        PATHS.runtime_root.mkdir(parents=True, exist_ok=True)
        PATHS.uploads_root.mkdir(parents=True, exist_ok=True)

        init_db()

        # Pending jobs may have lost their queue message if the queue file was reset.
        with SessionLocal() as db:
            submissions = [
                repository.submission_for(repository.require_job(db, job_id))
                for job_id in repository.list_pending_job_ids(db)
            ]

        for submission in submissions:
            enqueue_job(submission)
        if submissions:
            logger.info("pending_jobs_reenqueued", count=len(submissions))

        yield

    app = FastAPI(title="Audio Pipeline", version=APP_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    return app


app = create_app()
