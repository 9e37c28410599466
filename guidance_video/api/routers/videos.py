from uuid import UUID

import structlog
from fastapi import APIRouter, File, Form, HTTPException, UploadFile, status

from guidance_video.api.dependencies import AppSettings, Intake, Pool, Store, UploaderId
from guidance_video.api.schemas import CancelResponse, JobView, UploadResponse
from guidance_video.core.config import settings as default_settings
from guidance_video.core.exceptions import JobStateError
from guidance_video.models import Failed
from guidance_video.tasks.video import CANCELLED_MESSAGE

logger = structlog.get_logger()
router = APIRouter(prefix="/guidance/videos", tags=["Guidance Videos"])


@router.post(
    "",
    response_model=UploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a guidance video",
    description=f"""
Accepts a raw recording filmed over a solid key-color background and starts background removal.

**Max size:** {default_settings.max_file_size_mb}MB, **max duration:** {default_settings.max_duration_seconds}s

**Process:**
1. The upload is saved and a job is created with status `processing`
2. A worker keys out the background and encodes a transparent WebM
3. Poll `GET /guidance/videos/{{id}}` until the status is `completed` or `failed`
    """,
)
async def upload_video(
    intake: Intake,
    uploader_id: UploaderId,
    video: UploadFile | None = File(None, description="Raw screen recording"),
    challenge_id: str | None = Form(None, alias="challengeId"),
    quest_id: str | None = Form(None, alias="questId"),
    timestamps: str | None = Form(None, description="JSON array of millisecond offsets or step markers"),
) -> UploadResponse:
    """Accepts a recording and queues it for background removal."""
    job = await intake.accept(video, challenge_id, quest_id, timestamps, created_by=uploader_id)
    return UploadResponse(
        id=job.id,
        status=job.status,
        message="Video upload received, processing started",
    )


@router.get(
    "/{job_id}",
    response_model=JobView,
    response_model_exclude_none=True,
    summary="Video job status",
    description="""
Returns the job status. `url` and `duration` are present only once the status is `completed`;
`message` carries the error for `failed` jobs.
    """,
)
async def get_video(job_id: UUID, store: Store, settings: AppSettings):
    """Returns the status of a guidance video job."""
    job = store.get(job_id)
    return JobView.from_job(job, settings)


@router.delete(
    "/{job_id}",
    response_model=CancelResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel a video job",
    description="Stops a job that is still `processing`; its external tool process is killed.",
)
async def cancel_video(job_id: UUID, store: Store, pool: Pool):
    """Cancels a job that is still processing."""
    job = store.get(job_id)
    if job.status.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot cancel job with status: {job.status.value}",
        )

    if not pool.cancel(job.id):
        # No worker owns it (left over from a previous process), so fail the row directly.
        try:
            job = store.fail(job.id, Failed(error_message=CANCELLED_MESSAGE))
        except JobStateError:
            job = store.get(job_id)

    logger.info("video_cancel_requested", job_id=str(job.id))
    return CancelResponse(id=job.id, status=job.status, message="Cancellation requested")
