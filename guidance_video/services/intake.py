import json
import re
import secrets
from pathlib import Path
from typing import Annotated, Any, Union

import structlog
from fastapi import UploadFile
from pydantic import BaseModel, ConfigDict, Field, StrictInt, TypeAdapter, ValidationError
from starlette.concurrency import run_in_threadpool

from guidance_video.core.config import Settings
from guidance_video.core.exceptions import (
    IntakeValidationError,
    MissingRequiredFieldError,
    PoolSaturatedError,
)
from guidance_video.models import Failed, VideoJob
from guidance_video.worker import JobTicket, TranscodePool

from .job_store import JobStore
from .transcoder import TranscodeFailure, Transcoder

logger = structlog.get_logger()

CHALLENGE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
RAW_EXTENSION = ".webm"
CHUNK_SIZE = 1024 * 1024

Milliseconds = Annotated[StrictInt, Field(ge=0)]


class StepMarker(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_index: int = Field(alias="stepIndex")
    timestamp: Milliseconds
    action: str


_TIMESTAMPS = TypeAdapter(list[Union[Milliseconds, StepMarker]])


def parse_timestamps(raw: str | None) -> list[Any]:
    """Validate the JSON ``timestamps`` form field; the parsed value is stored unchanged."""
    if raw is None or not raw.strip():
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise IntakeValidationError("timestamps must be a JSON array") from None
    try:
        _TIMESTAMPS.validate_python(value)
    except ValidationError:
        raise IntakeValidationError(
            "timestamps must be an array of millisecond offsets or step markers"
        ) from None
    return value


def is_valid_challenge_id(challenge_id: str) -> bool:
    return bool(CHALLENGE_ID_RE.match(challenge_id))


class VideoIntake:
    """Validates an upload, saves it under ``raw/``, creates the job and hands it to the pool."""

    def __init__(self, settings: Settings, store: JobStore, pool: TranscodePool, transcoder: Transcoder) -> None:
        self.settings = settings
        self.store = store
        self.pool = pool
        self.transcoder = transcoder

    async def accept(
        self,
        upload: UploadFile | None,
        challenge_id: str | None,
        quest_id: str | None,
        timestamps: str | None,
        created_by: str | None = None,
    ) -> VideoJob:
        if upload is None or not upload.filename:
            raise MissingRequiredFieldError("video")

        missing = [name for name, value in (("challengeId", challenge_id), ("questId", quest_id)) if not value]
        if missing:
            raise MissingRequiredFieldError(*missing)

        if not is_valid_challenge_id(challenge_id):
            raise IntakeValidationError("challengeId may only contain letters, digits, '-' and '_'")

        if not (upload.content_type or "").startswith("video/"):
            raise IntakeValidationError("Only video files are allowed")

        max_bytes = self.settings.max_file_size_bytes
        if upload.size is not None and upload.size > max_bytes:
            raise IntakeValidationError(f"File too large. Max: {self.settings.max_file_size_mb}MB")

        parsed_timestamps = parse_timestamps(timestamps)

        raw_path = await self._save_upload(upload)
        try:
            await run_in_threadpool(self._check_duration, raw_path)
        except IntakeValidationError:
            raw_path.unlink(missing_ok=True)
            raise

        job = self.store.create(
            challenge_id=challenge_id,
            quest_id=quest_id,
            raw_path=str(raw_path),
            timestamps=parsed_timestamps,
            created_by=created_by,
        )

        try:
            self.pool.submit(JobTicket(job_id=job.id, raw_path=str(raw_path), challenge_id=challenge_id))
        except PoolSaturatedError as e:
            self.store.fail(job.id, Failed(error_message=str(e)))
            raw_path.unlink(missing_ok=True)
            raise

        logger.info("video_uploaded", job_id=str(job.id), challenge_id=challenge_id, created_by=created_by)
        return job

    async def _save_upload(self, upload: UploadFile) -> Path:
        raw_dir = self.settings.raw_dir
        raw_dir.mkdir(parents=True, exist_ok=True)
        path = raw_dir / f"{secrets.token_urlsafe(16)}{RAW_EXTENSION}"
        max_bytes = self.settings.max_file_size_bytes
        written = 0

        try:
            with path.open("wb") as out:
                while chunk := await upload.read(CHUNK_SIZE):
                    written += len(chunk)
                    if written > max_bytes:
                        raise IntakeValidationError(f"File too large. Max: {self.settings.max_file_size_mb}MB")
                    out.write(chunk)
        except BaseException:
            path.unlink(missing_ok=True)
            raise

        return path

    def _check_duration(self, raw_path: Path) -> None:
        # Undecodable uploads are accepted here; the pipeline records them as failed jobs.
        try:
            info = self.transcoder.probe(str(raw_path), timeout=self.settings.intake_probe_timeout_seconds)
        except TranscodeFailure as e:
            logger.warning("intake_probe_failed", raw_path=str(raw_path), error=str(e))
            return

        if info.duration > self.settings.max_duration_seconds:
            raise IntakeValidationError(f"Video too long. Max: {self.settings.max_duration_seconds}s")
