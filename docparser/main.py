# docparser/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docparser.config import Settings, get_settings
from docparser.db import create_tables
from docparser.dependencies import Container, build_container
from docparser.routers import contracts, health, knowledge, validations
from docparser.shared.errors import AppError

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, container: Optional[Container] = None) -> FastAPI:
    settings = settings or (container.settings if container else get_settings())
    logging.basicConfig(level=settings.logger.level)

    # -------- Scheduled job --------
    async def _retention_job():
        started_at = datetime.now(timezone.utc)
        removed = await app.state.container.orchestrator.cleanup_expired(started_at.replace(tzinfo=None))
        logger.info("retention-job finished: ran_at=%s removed=%d", started_at.isoformat(), removed)

    # -------- Lifespan (startup/shutdown) --------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.container = container or build_container(settings)
        # Startup: create tables (quick start; use Alembic in prod)
        await create_tables(app.state.container.engine)
        logger.info("%s startup complete (tables ensured)", settings.service_name)

        scheduler = None
        if settings.pipeline.run_retention_sweep:
            scheduler = AsyncIOScheduler()
            scheduler.add_job(
                _retention_job,
                "interval",
                minutes=settings.pipeline.retention_sweep_minutes,
                id="retention-job",
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            app.state.scheduler = scheduler

        try:
            yield  # ---- App runs ----
        finally:
            if scheduler:
                scheduler.shutdown(wait=False)
            await app.state.container.aclose()
            logger.info("%s shut down", settings.service_name)

    # -------- App --------
    app = FastAPI(
        title="Smart DocParser",
        description=(
            "Ingests contracts (PDF, DOCX, text, scans), extracts their text with OCR "
            "where needed and returns parties, value, payment milestones, risks and a "
            "validity verdict with a confidence score."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS (tighten in prod)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handlers
    @app.exception_handler(AppError)
    async def app_exception_handler(_: Request, err: AppError):
        return JSONResponse(status_code=err.status_code, content={"detail": err.message, "kind": err.kind})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Error occurred on path %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "An unexpected error occurred. Please try again later.", "kind": "internal"},
        )

    # Root
    @app.get("/")
    def read_root():
        return {"message": "Welcome to Smart DocParser"}

    app.include_router(health.router)
    app.include_router(contracts.router)
    app.include_router(validations.router)
    app.include_router(knowledge.router)
    return app


app = create_app()
