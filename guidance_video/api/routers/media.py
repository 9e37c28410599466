from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from guidance_video.api.dependencies import AppSettings
from guidance_video.services.intake import is_valid_challenge_id

router = APIRouter(tags=["Media"])


@router.get("/{challenge_id}.webm", response_class=FileResponse, summary="Processed video file")
async def get_processed_video(challenge_id: str, settings: AppSettings):
    """Streams a processed WebM file."""
    if not is_valid_challenge_id(challenge_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")

    path = settings.processed_dir / f"{challenge_id}.webm"
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")

    return FileResponse(path, media_type="video/webm")
