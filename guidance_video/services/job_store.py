from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.orm import Session, sessionmaker

from guidance_video.core.exceptions import JobNotFoundError, JobStateError
from guidance_video.models import Completed, Failed, JobEvent, JobStatus, VideoJob

logger = structlog.get_logger()


class JobStore:
    """
    Video job records. Each job is written twice: once at creation (processing) and once
    for its terminal transition. Nothing moves a job out of a terminal state.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def create(
        self,
        *,
        challenge_id: str,
        quest_id: str,
        raw_path: str,
        timestamps: list[Any] | None = None,
        created_by: str | None = None,
    ) -> VideoJob:
        with self._session_factory() as db:
            job = VideoJob(
                challenge_id=challenge_id,
                quest_id=quest_id,
                raw_path=raw_path,
                timestamps=list(timestamps or []),
                status=JobStatus.PROCESSING,
                created_by=created_by,
            )
            db.add(job)
            db.flush()
            _log_event(db, job.id, "JOB_CREATED", None, JobStatus.PROCESSING, {"raw_path": raw_path})
            db.commit()
            db.refresh(job)

        logger.info("job_created", job_id=str(job.id), challenge_id=challenge_id, quest_id=quest_id)
        return job

    def find(self, job_id: UUID) -> VideoJob | None:
        with self._session_factory() as db:
            return db.query(VideoJob).filter(VideoJob.id == job_id).first()

    def get(self, job_id: UUID) -> VideoJob:
        job = self.find(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def latest_completed_for_challenge(self, challenge_id: str) -> VideoJob | None:
        """The job whose artifact was published last, i.e. the one on disk."""
        with self._session_factory() as db:
            return (
                db.query(VideoJob)
                .filter(VideoJob.challenge_id == challenge_id, VideoJob.status == JobStatus.COMPLETED)
                .order_by(VideoJob.completed_at.desc(), VideoJob.created_at.desc())
                .first()
            )

    def complete(self, job_id: UUID, outcome: Completed) -> VideoJob:
        return self._transition(job_id, outcome)

    def fail(self, job_id: UUID, outcome: Failed) -> VideoJob:
        return self._transition(job_id, outcome)

    def fail_interrupted(self, message: str = "Processing interrupted by service restart") -> int:
        """Fail jobs left in processing by a previous process; nothing can be running them now."""
        with self._session_factory() as db:
            stale = db.query(VideoJob.id).filter(VideoJob.status == JobStatus.PROCESSING).all()

        for (job_id,) in stale:
            try:
                self.fail(job_id, Failed(error_message=message))
            except JobStateError:
                continue

        if stale:
            logger.warning("interrupted_jobs_failed", count=len(stale))
        return len(stale)

    def _transition(self, job_id: UUID, outcome: Completed | Failed) -> VideoJob:
        with self._session_factory() as db:
            job = db.query(VideoJob).filter(VideoJob.id == job_id).with_for_update().first()
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status.is_terminal:
                raise JobStateError(f"Job {job_id} is already {job.status.value}")

            old_status = job.status
            job.status = outcome.status
            job.completed_at = datetime.now(timezone.utc)

            if isinstance(outcome, Completed):
                if outcome.completed_at is not None:
                    job.completed_at = outcome.completed_at
                job.processed_path = outcome.processed_path
                job.duration = outcome.duration
                job.file_size = outcome.file_size
                event_type = "PROCESSING_COMPLETED"
                event_data = {"duration": outcome.duration, "file_size": outcome.file_size}
            else:
                job.error_message = outcome.error_message
                event_type = "PROCESSING_FAILED"
                event_data = {"error": outcome.error_message}

            _log_event(db, job.id, event_type, old_status, job.status, event_data)
            db.commit()
            db.refresh(job)
            return job


def _log_event(db: Session, job_id: UUID, event_type: str, old_status, new_status, metadata=None) -> None:
    db.add(
        JobEvent(
            job_id=job_id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            event_data=metadata,
        )
    )
