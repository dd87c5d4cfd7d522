"""Entrypoint for the FastAPI application."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bulk_ingest.api import health, imports, progress
from bulk_ingest.core.config import Settings, get_settings
from bulk_ingest.services.job_manager import JobManager, build_job_manager

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, *, job_manager: JobManager | None = None) -> FastAPI:
    """Build the API application.

    Args:
        settings: Settings to use instead of the environment-derived ones
        job_manager: Prebuilt JobManager; one is built from settings when omitted
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        manager = job_manager or build_job_manager(settings)
        if settings.execution_mode == "local":
            recovered = manager.recover_interrupted_jobs()
        else:
            # workers may still be running jobs; only idle ones are orphaned
            recovered = manager.recover_interrupted_jobs(idle_for=timedelta(seconds=settings.stale_job_seconds))
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted import job(s) as failed and resumable")
        app.state.job_manager = manager
        try:
            yield
        finally:
            manager.shutdown(wait=True)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        description="Bulk ingestion of tracked objects from CSV and spreadsheet files",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    app.include_router(health.router)  # Health checks at root level
    app.include_router(imports.router, prefix=settings.api_prefix)
    app.include_router(progress.router, prefix=settings.api_prefix)
    return app


app = create_app()
