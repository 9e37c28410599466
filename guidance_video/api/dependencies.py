from typing import Annotated

from fastapi import Depends, Header, Request

from guidance_video.core.config import Settings
from guidance_video.services import JobStore, VideoIntake
from guidance_video.worker import TranscodePool


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_pool(request: Request) -> TranscodePool:
    return request.app.state.pool


def get_intake(request: Request) -> VideoIntake:
    return request.app.state.intake


def get_uploader_id(x_user_id: Annotated[str | None, Header()] = None) -> str | None:
    """Uploader identity as forwarded by the authenticating proxy in front of this service."""
    return x_user_id or None


AppSettings = Annotated[Settings, Depends(get_app_settings)]
Store = Annotated[JobStore, Depends(get_job_store)]
Pool = Annotated[TranscodePool, Depends(get_pool)]
Intake = Annotated[VideoIntake, Depends(get_intake)]
UploaderId = Annotated[str | None, Depends(get_uploader_id)]
