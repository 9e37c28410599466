from pathlib import Path

from fastapi import APIRouter, HTTPException, status

from guidance_video.api.dependencies import AppSettings, Store
from guidance_video.api.schemas import ChallengeVideoResponse

router = APIRouter(prefix="/guidance/challenges", tags=["Guidance Videos"])


@router.get(
    "/{challenge_id}/video",
    response_model=ChallengeVideoResponse,
    summary="Playable video for a challenge",
    description="Latest completed video for the challenge. Jobs still processing or failed are not visible here.",
)
async def get_challenge_video(challenge_id: str, store: Store, settings: AppSettings):
    """Returns the most recently published video for a challenge."""
    job = store.latest_completed_for_challenge(challenge_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No video available")

    if not Path(job.processed_path).is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video file not available")

    return ChallengeVideoResponse(
        url=settings.processed_url(challenge_id),
        duration=job.duration,
        timestamps=job.timestamps or [],
    )
