from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncGenerator

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from guidance_video.api.routers import challenges_router, health_router, media_router, videos_router
from guidance_video.core.config import Settings, get_settings
from guidance_video.core.exceptions import IntakeValidationError, JobNotFoundError, PoolSaturatedError
from guidance_video.models import Base
from guidance_video.models import engine as default_engine
from guidance_video.services import (
    FFmpegTranscoder,
    JobStore,
    Transcoder,
    VideoIntake,
    WorkspaceManager,
    WorkspaceReaper,
    build_pipeline,
)
from guidance_video.tasks.video import process_video
from guidance_video.worker import TranscodePool

logger = structlog.get_logger()


def create_app(
    settings: Settings | None = None,
    transcoder: Transcoder | None = None,
    engine: Engine | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    engine = engine or default_engine

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        Base.metadata.create_all(bind=engine)
        for directory in (settings.raw_dir, settings.processed_dir, settings.frames_dir):
            directory.mkdir(parents=True, exist_ok=True)

        store = JobStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
        if settings.fail_interrupted_jobs_on_startup:
            store.fail_interrupted()

        workspace = WorkspaceManager(settings.frames_dir)
        workspace.reap_orphans(settings.workspace_max_age_seconds)

        tool = transcoder or FFmpegTranscoder.from_settings(settings)
        pipeline = build_pipeline(settings, tool, workspace)
        pool = TranscodePool(
            partial(process_video, store, pipeline),
            workers=settings.worker_concurrency,
            queue_size=settings.transcode_queue_size,
        )
        pool.start()

        reaper = None
        if settings.workspace_reaper_interval_seconds > 0:
            reaper = WorkspaceReaper(
                workspace,
                interval_seconds=settings.workspace_reaper_interval_seconds,
                max_age_seconds=settings.workspace_max_age_seconds,
            )
            reaper.start()

        app.state.settings = settings
        app.state.engine = engine
        app.state.job_store = store
        app.state.pool = pool
        app.state.intake = VideoIntake(settings, store, pool, tool)

        logger.info(
            "service_started",
            pipeline=settings.pipeline_variant,
            workers=settings.worker_concurrency,
            base_dir=str(settings.base_dir),
        )
        try:
            yield
        finally:
            pool.shutdown(cancel_jobs=True)
            if reaper is not None:
                reaper.stop()
            logger.info("service_stopped")

    app = FastAPI(
        title="Guidance Video Service",
        description="""
## Guidance Video Processing

Turns raw screen recordings filmed over a solid key-color background into small
transparent WebM overlays that guide users through a challenge.

### Flow

1. Upload a recording to `/guidance/videos` with its `challengeId` and `questId`
2. Poll `/guidance/videos/{id}` until the job is `completed` or `failed`
3. Players fetch `/guidance/challenges/{challengeId}/video` and stream the returned `url`

### Output

VP9 with alpha (`yuva420p`) plus Opus audio in a WebM container.
        """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "Health", "description": "Health check endpoints"},
            {"name": "Guidance Videos", "description": "Upload, status and cancellation of guidance videos"},
            {"name": "Media", "description": "Processed video files"},
        ],
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    @app.exception_handler(IntakeValidationError)
    async def intake_error_handler(request: Request, exc: IntakeValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(JobNotFoundError)
    async def not_found_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PoolSaturatedError)
    async def saturated_handler(request: Request, exc: PoolSaturatedError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    app.include_router(health_router)
    app.include_router(videos_router, prefix=settings.api_prefix)
    app.include_router(challenges_router, prefix=settings.api_prefix)
    app.include_router(media_router, prefix=settings.processed_url_prefix.rstrip("/"))

    @app.get("/")
    async def root():
        return {"service": "guidance-video", "version": "1.0.0", "docs": "/docs"}

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("guidance_video.api.main:app", host=settings.api_host, port=settings.api_port, reload=settings.debug)
