import shutil

from fastapi import APIRouter, Request
from sqlalchemy import text

from guidance_video.api.dependencies import AppSettings, Pool

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check() -> dict:
    return {"status": "healthy", "service": "guidance-video"}


@router.get("/health/ready")
async def readiness_check(request: Request, settings: AppSettings, pool: Pool) -> dict:
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "connected"
    except Exception:
        database = "disconnected"

    ffmpeg = shutil.which(settings.ffmpeg_bin) is not None
    ffprobe = shutil.which(settings.ffprobe_bin) is not None
    ready = database == "connected" and ffmpeg and ffprobe

    return {
        "status": "ready" if ready else "not_ready",
        "database": database,
        "ffmpeg": ffmpeg,
        "ffprobe": ffprobe,
        "pending_jobs": pool.pending,
        "running_jobs": pool.running,
    }
