from typing import Any
from uuid import UUID

from pydantic import BaseModel

from guidance_video.core.config import Settings
from guidance_video.models import Completed, Failed, JobStatus


class UploadResponse(BaseModel):
    id: UUID
    status: JobStatus
    message: str


class JobView(BaseModel):
    id: UUID
    status: JobStatus
    timestamps: list[Any] = []
    url: str | None = None
    duration: float | None = None
    message: str | None = None

    @classmethod
    def from_job(cls, job, settings: Settings) -> "JobView":
        state = job.state
        view = cls(id=job.id, status=job.status, timestamps=job.timestamps or [])
        if isinstance(state, Completed):
            view.url = settings.processed_url(job.challenge_id)
            view.duration = state.duration
        elif isinstance(state, Failed):
            view.message = state.error_message
        return view


class ChallengeVideoResponse(BaseModel):
    url: str
    duration: float
    timestamps: list[Any] = []


class CancelResponse(BaseModel):
    id: UUID
    status: JobStatus
    message: str
